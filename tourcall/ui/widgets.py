from __future__ import annotations

from PySide6 import QtCore, QtWidgets


class LogPanel(QtWidgets.QPlainTextEdit):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setReadOnly(True)
		self.setMaximumBlockCount(2000)

	@QtCore.Slot(str)
	def append_log(self, message: str) -> None:
		self.appendPlainText(message)


class CallStatusCard(QtWidgets.QFrame):
	_STATUS_TEXT = {
		"idle": "Idle",
		"calling": "Calling...",
		"ringing": "Incoming call",
		"connected": "In call",
		"ended": "Call ended",
		"error": "Error",
	}

	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self.setFrameShadow(QtWidgets.QFrame.Shadow.Raised)

		self._connection = QtWidgets.QLabel("Disconnected")
		self._call = QtWidgets.QLabel("Idle")
		self._caller = QtWidgets.QLabel("—")
		self._duration = QtWidgets.QLabel("00:00")
		self._error = QtWidgets.QLabel("")
		self._error.setStyleSheet("color: #c0392b;")
		self._error.setWordWrap(True)

		layout = QtWidgets.QVBoxLayout(self)
		layout.setContentsMargins(10, 10, 10, 10)
		layout.setSpacing(6)

		header = QtWidgets.QLabel("Call")
		font = header.font()
		font.setBold(True)
		header.setFont(font)
		layout.addWidget(header)

		form = QtWidgets.QFormLayout()
		form.setContentsMargins(0, 0, 0, 0)
		form.setHorizontalSpacing(12)
		form.setVerticalSpacing(4)
		form.addRow("Connection", self._connection)
		form.addRow("Status", self._call)
		form.addRow("With", self._caller)
		form.addRow("Duration", self._duration)
		layout.addLayout(form)
		layout.addWidget(self._error)

	@QtCore.Slot(str)
	def set_connection_state(self, state: str) -> None:
		self._connection.setText(state.strip() or "—")

	@QtCore.Slot(str)
	def set_call_status(self, status: str) -> None:
		self._call.setText(self._STATUS_TEXT.get(status, status))
		if status != "error":
			self._error.setText("")

	@QtCore.Slot(str)
	def set_caller(self, name: str) -> None:
		self._caller.setText(name.strip() or "—")

	@QtCore.Slot(str)
	def set_duration(self, duration: str) -> None:
		self._duration.setText(duration)

	@QtCore.Slot(str)
	def set_error(self, message: str) -> None:
		self._error.setText(message)
