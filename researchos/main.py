# Rev 0.1.0

# researchos/main.py  (Rev 0.1.0)
import logging
import os
import sys

from PySide6.QtCore import QCoreApplication
from PySide6.QtGui import QIcon
from PySide6.QtWidgets import QApplication, QStyle, QSystemTrayIcon

from researchos.app_context import AppContext, DEMO_USER_ID
from researchos.models.entities import Notification, SessionContext
from researchos.services.notification_center import LogSink
from researchos.utils.config import SyncConfig, load_settings
from researchos.utils.logging_setup import setup_logging

log = logging.getLogger(__name__)


class TraySink:
    """Shows notifications as desktop popups through the tray icon."""

    def __init__(self, tray: QSystemTrayIcon, timeout_ms: int = 8000):
        self._tray = tray
        self._timeout_ms = timeout_ms
        self._fallback = LogSink()

    def show(self, notification: Notification) -> None:
        if not (self._tray.isVisible() and QSystemTrayIcon.supportsMessages()):
            self._fallback.show(notification)
            return
        self._tray.showMessage(notification.title, notification.message,
                               QSystemTrayIcon.MessageIcon.Information, self._timeout_ms)


def _session_from_env(config: SyncConfig) -> SessionContext:
    # Sign-in happens elsewhere; the shell only hands over who is signed in
    user_id = os.environ.get("RESEARCHOS_USER_ID")
    if config.demo_mode or not user_id:
        return SessionContext(user_id or DEMO_USER_ID, is_demo_mode=True, display_name="You")
    return SessionContext(user_id, is_demo_mode=False, display_name=os.environ.get("RESEARCHOS_USER_NAME"))


def _tray(app: QApplication) -> QSystemTrayIcon:
    icon = QIcon.fromTheme("appointment-soon", app.style().standardIcon(QStyle.StandardPixmap.SP_MessageBoxInformation))
    tray = QSystemTrayIcon(icon, app)
    tray.setToolTip("ResearchOS")
    if QSystemTrayIcon.isSystemTrayAvailable():
        tray.show()
    return tray


def main():
    app = QApplication(sys.argv)
    app.setQuitOnLastWindowClosed(False)
    QCoreApplication.setOrganizationName("researchos")
    QCoreApplication.setApplicationName("researchos")

    logfile = setup_logging("researchos")
    print(f"[logging] Writing to: {logfile}")

    config = SyncConfig.from_settings(load_settings())
    tray = _tray(app)
    ctx = AppContext.create(config, _session_from_env(config), sink=TraySink(tray))

    def toast(message: str) -> None:
        log.warning("toast: %s", message)
        if tray.isVisible():
            tray.showMessage("ResearchOS", message, QSystemTrayIcon.MessageIcon.Warning, 5000)

    for source in (ctx.dispatcher, ctx.today, ctx.notifications):
        source.toast.connect(toast)

    ctx.start()
    app.aboutToQuit.connect(ctx.shutdown)
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
