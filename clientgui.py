import sys
import threading

from PyQt5.QtWidgets import (
    QApplication, QMainWindow, QWidget, QVBoxLayout, QPushButton, QSpinBox,
    QTextEdit, QLabel, QMessageBox, QHBoxLayout, QFileDialog, QGroupBox
)
from PyQt5.QtCore import pyqtSignal, QObject

import otp
from clientcli import timestamped_filename
from config import MAX_KEY_LENGTH


class Communicator(QObject):
    """Qt signal bridge for thread-safe UI updates."""
    status = pyqtSignal(str)
    decrypted = pyqtSignal(str)
    error_occurred = pyqtSignal(str)


class FilePicker(QWidget):
    """A button that remembers the contents of the chosen .pem file."""

    def __init__(self, caption: str, on_change):
        super().__init__()
        self.contents = ""
        self.caption = caption
        self.on_change = on_change
        self.button = QPushButton(caption)
        self.label = QLabel("no file")
        self.button.clicked.connect(self._choose)
        layout = QHBoxLayout()
        layout.addWidget(self.button)
        layout.addWidget(self.label)
        layout.addStretch()
        self.setLayout(layout)

    def _choose(self):
        filename, _ = QFileDialog.getOpenFileName(self, self.caption, "", "PEM files (*.pem);;All files (*)")
        if not filename:
            return
        with open(filename, 'r') as f:
            self.contents = f.read()
        self.label.setText(filename)
        self.on_change()


class OTPWindow(QMainWindow):
    """PyQt5 window for generating keys, encrypting and decrypting."""

    def __init__(self):
        super().__init__()
        self.setWindowTitle("Sarah-OTP")
        self.setGeometry(100, 100, 700, 600)

        self.comm = Communicator()
        self.comm.status.connect(self._show_status)
        self.comm.decrypted.connect(self._show_decrypted)
        self.comm.error_occurred.connect(self._show_error)

        self._init_ui()

    def _init_ui(self):
        # Generate key
        self.key_size = QSpinBox()
        self.key_size.setRange(1, MAX_KEY_LENGTH)
        self.key_size.setValue(1000)
        self.generate_button = QPushButton("Generate Key")
        self.generate_button.clicked.connect(self._generate_key)
        generate_layout = QHBoxLayout()
        generate_layout.addWidget(QLabel("Maximum message length (bytes)"))
        generate_layout.addWidget(self.key_size)
        generate_layout.addWidget(self.generate_button)
        generate_box = QGroupBox("Generate key")
        generate_box.setLayout(generate_layout)

        # Encrypt
        self.encrypt_message = QTextEdit()
        self.encrypt_message.setPlaceholderText("Type your message...")
        self.encrypt_key = FilePicker("Key file...", self._update_buttons)
        self.encrypt_button = QPushButton("Encrypt")
        self.encrypt_button.clicked.connect(self._encrypt)
        encrypt_layout = QVBoxLayout()
        encrypt_layout.addWidget(self.encrypt_message)
        encrypt_layout.addWidget(self.encrypt_key)
        encrypt_layout.addWidget(self.encrypt_button)
        encrypt_box = QGroupBox("Encrypt")
        encrypt_box.setLayout(encrypt_layout)

        # Decrypt
        self.decrypt_cipher = FilePicker("Cipher file...", self._update_buttons)
        self.decrypt_key = FilePicker("Key file...", self._update_buttons)
        self.decrypt_button = QPushButton("Decrypt")
        self.decrypt_button.clicked.connect(self._decrypt)
        self.decrypted_message = QTextEdit()
        self.decrypted_message.setReadOnly(True)
        decrypt_layout = QVBoxLayout()
        decrypt_layout.addWidget(self.decrypt_cipher)
        decrypt_layout.addWidget(self.decrypt_key)
        decrypt_layout.addWidget(self.decrypt_button)
        decrypt_layout.addWidget(self.decrypted_message)
        decrypt_box = QGroupBox("Decrypt")
        decrypt_box.setLayout(decrypt_layout)

        self.status_label = QLabel("")

        layout = QVBoxLayout()
        layout.addWidget(generate_box)
        layout.addWidget(encrypt_box)
        layout.addWidget(decrypt_box)
        layout.addWidget(self.status_label)

        container = QWidget()
        container.setLayout(layout)
        self.setCentralWidget(container)
        self._update_buttons()

        self.setStyleSheet("""
            QMainWindow {
                background-color: #1e1e1e;
                color: #ffffff;
            }
            QTextEdit, QSpinBox {
                background-color: #2e2e2e;
                color: #ffffff;
                border: 1px solid #555;
                padding: 5px;
            }
            QLabel, QGroupBox {
                font-weight: bold;
                color: #f8f8f2;
            }
            QPushButton {
                background-color: #1e1e1e;
                color: white;
                padding: 8px;
                border-radius: 5px;
                font-weight: bold;
                border: 2px solid purple;
            }
            QPushButton:disabled {
                color: #777;
                border-color: #555;
            }
        """)

    def _update_buttons(self):
        self.encrypt_button.setEnabled(bool(self.encrypt_key.contents))
        self.decrypt_button.setEnabled(bool(self.decrypt_cipher.contents and self.decrypt_key.contents))

    def _run(self, action):
        """Run a codec action in a background thread."""
        threading.Thread(target=action, daemon=True).start()

    def _save(self, name: str, armored: str):
        filename = timestamped_filename(name)
        with open(filename, 'w') as f:
            f.write(armored)
        self.comm.status.emit(f"[+] Saved {name} to {filename}")

    def _generate_key(self):
        length = self.key_size.value()

        def action():
            try:
                self._save("key", otp.generate_key(length))
            except (otp.OTPError, OSError) as e:
                self.comm.error_occurred.emit(f"could not create key file: {e}")
        self._run(action)

    def _encrypt(self):
        message = self.encrypt_message.toPlainText()
        key = self.encrypt_key.contents

        def action():
            try:
                self._save("cipher", otp.encrypt(message, key))
            except (otp.OTPError, OSError) as e:
                self.comm.error_occurred.emit(f"could not encrypt message: {e}")
        self._run(action)

    def _decrypt(self):
        cipher = self.decrypt_cipher.contents
        key = self.decrypt_key.contents

        def action():
            try:
                message = otp.decrypt(cipher, key)
            except otp.OTPError as e:
                self.comm.error_occurred.emit(f"could not decrypt cipher: {e}")
                return
            self.comm.decrypted.emit(otp.trim_padding(message))
        self._run(action)

    def _show_status(self, message: str):
        self.status_label.setText(message)

    def _show_decrypted(self, message: str):
        self.decrypted_message.setPlainText(message)

    def _show_error(self, message: str):
        """Display error in message box and status line."""
        QMessageBox.critical(self, "Error", message)
        self.status_label.setText(f"[ERROR]: {message}")


if __name__ == '__main__':
    app = QApplication(sys.argv)
    window = OTPWindow()
    window.show()
    sys.exit(app.exec_())
