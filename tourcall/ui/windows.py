from __future__ import annotations

from PySide6 import QtCore, QtWidgets

from .widgets import CallStatusCard, LogPanel


class MainWindow(QtWidgets.QMainWindow):
	connect_clicked = QtCore.Signal()
	disconnect_clicked = QtCore.Signal()
	refresh_devices_clicked = QtCore.Signal()
	call_clicked = QtCore.Signal()
	accept_clicked = QtCore.Signal()
	reject_clicked = QtCore.Signal()
	hangup_clicked = QtCore.Signal()
	mute_clicked = QtCore.Signal()

	def __init__(self):
		super().__init__()
		self.setWindowTitle("tourcall")

		central = QtWidgets.QWidget()
		self.setCentralWidget(central)

		self.server_url_edit = QtWidgets.QLineEdit()
		self.server_url_edit.setPlaceholderText("ws://host:8765/ws")

		self.room_edit = QtWidgets.QLineEdit()
		self.room_edit.setPlaceholderText("Chat room id")

		self.user_id_edit = QtWidgets.QLineEdit()
		self.user_id_edit.setPlaceholderText("Your user id")

		self.name_edit = QtWidgets.QLineEdit()
		self.name_edit.setPlaceholderText("Display name")

		self.target_id_edit = QtWidgets.QLineEdit()
		self.target_id_edit.setPlaceholderText("User id to call")

		self.target_name_edit = QtWidgets.QLineEdit()
		self.target_name_edit.setPlaceholderText("Their display name")

		self.mic_combo = QtWidgets.QComboBox()
		self.speaker_combo = QtWidgets.QComboBox()
		self.refresh_devices_btn = QtWidgets.QPushButton("Refresh")

		self.connect_btn = QtWidgets.QPushButton("Connect")
		self.disconnect_btn = QtWidgets.QPushButton("Disconnect")
		self.call_btn = QtWidgets.QPushButton("Call")
		self.accept_btn = QtWidgets.QPushButton("Accept")
		self.reject_btn = QtWidgets.QPushButton("Reject")
		self.hangup_btn = QtWidgets.QPushButton("Hang up")
		self.mute_btn = QtWidgets.QPushButton("Mute")

		self.log_panel = LogPanel()
		self.status_card = CallStatusCard()

		form = QtWidgets.QFormLayout()
		form.addRow("Server", self.server_url_edit)
		form.addRow("Room", self.room_edit)
		form.addRow("User id", self.user_id_edit)
		form.addRow("Name", self.name_edit)
		form.addRow("Call user", self.target_id_edit)
		form.addRow("Call name", self.target_name_edit)
		mic_row = QtWidgets.QHBoxLayout()
		mic_row.setContentsMargins(0, 0, 0, 0)
		mic_row.addWidget(self.mic_combo, 1)
		mic_row.addWidget(self.refresh_devices_btn)
		mic_row_widget = QtWidgets.QWidget()
		mic_row_widget.setLayout(mic_row)
		form.addRow("Mic", mic_row_widget)
		form.addRow("Speaker", self.speaker_combo)

		conn_row = QtWidgets.QHBoxLayout()
		conn_row.addWidget(self.connect_btn)
		conn_row.addWidget(self.disconnect_btn)
		conn_row.addStretch(1)

		call_row = QtWidgets.QHBoxLayout()
		call_row.addWidget(self.call_btn)
		call_row.addWidget(self.accept_btn)
		call_row.addWidget(self.reject_btn)
		call_row.addWidget(self.hangup_btn)
		call_row.addWidget(self.mute_btn)

		left = QtWidgets.QVBoxLayout()
		left.addLayout(form)
		left.addLayout(conn_row)
		left.addLayout(call_row)
		left.addWidget(self.status_card, 0)
		left.addStretch(1)

		right = QtWidgets.QVBoxLayout()
		right.addWidget(QtWidgets.QLabel("Log"))
		right.addWidget(self.log_panel, 1)

		main = QtWidgets.QHBoxLayout(central)
		main.addLayout(left, 1)
		main.addLayout(right, 1)

		self.status = QtWidgets.QStatusBar()
		self.setStatusBar(self.status)
		self.set_status("Idle")

		self.connect_btn.clicked.connect(self.connect_clicked.emit)
		self.disconnect_btn.clicked.connect(self.disconnect_clicked.emit)
		self.refresh_devices_btn.clicked.connect(self.refresh_devices_clicked.emit)
		self.call_btn.clicked.connect(self.call_clicked.emit)
		self.accept_btn.clicked.connect(self.accept_clicked.emit)
		self.reject_btn.clicked.connect(self.reject_clicked.emit)
		self.hangup_btn.clicked.connect(self.hangup_clicked.emit)
		self.mute_btn.clicked.connect(self.mute_clicked.emit)

		self.set_call_controls("idle", connected=False)

	def set_status(self, text: str) -> None:
		self.status.showMessage(text)

	def set_call_controls(self, call_status: str, *, connected: bool) -> None:
		self.call_btn.setEnabled(connected and call_status == "idle")
		self.accept_btn.setEnabled(call_status == "ringing")
		self.reject_btn.setEnabled(call_status == "ringing")
		self.hangup_btn.setEnabled(call_status in ("calling", "connected", "error"))
		self.hangup_btn.setText("Dismiss" if call_status == "error" else "Hang up")
		self.mute_btn.setEnabled(call_status == "connected")

	def set_muted(self, muted: bool) -> None:
		self.mute_btn.setText("Unmute" if muted else "Mute")
