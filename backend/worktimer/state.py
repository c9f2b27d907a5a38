from __future__ import annotations

import logging
from collections import defaultdict
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from .config import Settings
from .controller import AutoClosureNotice, SessionController
from .executor import ReservationExecutor
from .store import ReservationStore, SessionStore, WorkLogLedger
from .utils import utcnow

logger = logging.getLogger(__name__)


class RuntimeState:
    """Process-wide stores, scheduler and the per-user session controllers."""

    def __init__(
        self,
        base_settings: Settings,
        session_factory: Callable[[], Session],
        *,
        scheduler: Any = None,
        clock: Callable = utcnow,
        executor: Optional[ReservationExecutor] = None,
    ) -> None:
        self._lock = RLock()
        self.settings = base_settings
        self.clock = clock
        self.session_store = SessionStore(session_factory, retries=base_settings.transaction_retries)
        self.reservation_store = ReservationStore(session_factory, retries=base_settings.transaction_retries)
        self.ledger = WorkLogLedger(session_factory)
        self.executor = executor or ReservationExecutor(
            self.session_store, self.reservation_store, clock=clock
        )
        self.scheduler = scheduler or BackgroundScheduler(timezone=base_settings.timezone)
        self._controllers: Dict[str, SessionController] = {}
        self._notices: Dict[str, List[AutoClosureNotice]] = defaultdict(list)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
        if self.settings.executor_embedded:
            self.scheduler.add_job(
                self.executor.run_once,
                IntervalTrigger(seconds=self.settings.executor_interval_seconds),
                id="reservation-executor",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info("Embedded reservation executor enabled")

    def shutdown(self) -> None:
        with self._lock:
            controllers = list(self._controllers.values())
            self._controllers.clear()
        for controller in controllers:
            controller.teardown()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def controller_for(self, user_id: str, user_name: Optional[str] = None) -> SessionController:
        with self._lock:
            controller = self._controllers.get(user_id)
            if controller is None:
                controller = SessionController(
                    user_id,
                    user_name,
                    self.session_store,
                    self.reservation_store,
                    self.scheduler,
                    clock=self.clock,
                    reservation_runner=self.executor.execute_reservation,
                    on_auto_closure=self._record_notice,
                )
                self._controllers[user_id] = controller
            elif user_name and controller.user_name != user_name:
                controller.user_name = user_name
            return controller

    def _record_notice(self, notice: AutoClosureNotice) -> None:
        with self._lock:
            self._notices[notice.user_id].append(notice)

    def pop_notices(self, user_id: str) -> List[AutoClosureNotice]:
        with self._lock:
            return self._notices.pop(user_id, [])
