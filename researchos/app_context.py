# researchos application context
# Rev 0.1.0

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from .utils.logging_setup import get_logger
from .utils.config import SyncConfig
from .utils.timefmt import utc_now
from .models.entities import SessionContext
from .repositories.db import Database
from .repositories.sqlite_blob_repository import SQLiteBlobRepository
from .repositories.supabase_backend import SupabaseBackend, SupabaseRestClient
from .services.notification_center import NotificationCenter, NotificationSink
from .services.overdue_scanner import OverdueScanner
from .services.persistence import Dispatcher, LocalBackend, PendingLedger
from .services.reconciliation import ReconciliationLayer
from .services.scheduling import InlineRunner, QtThreadRunner, Runner, TimerFactory, qt_timer_factory
from .services.today_engine import TodayEngine
from .services.tree_commands import TreeCommands
from .services.tree_store import ProjectTreeStore, Selection

DEMO_USER_ID = "demo-user"


@dataclass
class AppContext:
    """Central container for the sync core's shared objects."""
    config: SyncConfig
    session: SessionContext
    db: Database
    backend: Union[LocalBackend, SupabaseBackend]
    store: ProjectTreeStore
    selection: Selection
    dispatcher: Dispatcher
    commands: TreeCommands
    today: TodayEngine
    notifications: NotificationCenter
    scanner: OverdueScanner
    reconciler: ReconciliationLayer

    @classmethod
    def create(cls, config: SyncConfig, session: Optional[SessionContext] = None,
               timer_factory: TimerFactory = qt_timer_factory, runner: Optional[Runner] = None,
               sink: Optional[NotificationSink] = None,
               clock: Callable[[], datetime] = utc_now) -> "AppContext":
        """Open the local DB, pick the backend and wire the services together."""
        log = get_logger("AppContext")
        session = session or SessionContext(DEMO_USER_ID, is_demo_mode=True, display_name="You")
        if config.demo_mode and not session.is_demo_mode:
            session = SessionContext(session.current_user_id, True, session.display_name)

        db = Database(str(config.db_path))
        db.run_migrations()
        blobs = SQLiteBlobRepository(db)

        if session.is_demo_mode:
            # local writes are cheap and sqlite wants one thread
            runner = runner or InlineRunner()
            backend: Union[LocalBackend, SupabaseBackend] = LocalBackend(blobs, session.current_user_id)
        else:
            runner = runner or QtThreadRunner()
            client = SupabaseRestClient(config.supabase_url, config.supabase_key)
            backend = SupabaseBackend(client, blobs, runner, timer_factory, config.poll_interval_ms)

        store = ProjectTreeStore(session, clock)
        selection = Selection(store)
        dispatcher = Dispatcher(runner, PendingLedger())
        commands = TreeCommands(store, dispatcher, backend, session, clock)
        today = TodayEngine(store, commands, backend, session, runner, clock)
        center = NotificationCenter(store, backend, session, runner)
        scanner = OverdueScanner(store, center, session, timer_factory, config.scanner_interval_ms, sink, clock)
        reconciler = ReconciliationLayer(
            store, backend, session, runner, dispatcher.ledger, selection, today, center,
            timer_factory, config.self_debounce_ms, config.collaborator_debounce_ms,
        )

        def rearm(task_id, subtask_id):
            center.rearm(task_id, subtask_id)
            scanner.forget(task_id, subtask_id)
        commands.reminderChanged.connect(rearm)

        log.info("AppContext initialized (demo=%s, DB=%s)", session.is_demo_mode, config.db_path)
        return cls(config=config, session=session, db=db, backend=backend, store=store, selection=selection,
                   dispatcher=dispatcher, commands=commands, today=today, notifications=center,
                   scanner=scanner, reconciler=reconciler)

    def start(self) -> None:
        """Hydrate everything, then start the feed and the scanner."""
        self.reconciler.refresh(origin="load")
        self.notifications.load()
        self.today.load()
        self.reconciler.start()
        self.scanner.start()

    def shutdown(self) -> None:
        self.scanner.stop(reset=True)
        self.reconciler.stop()
        self.db.close()
