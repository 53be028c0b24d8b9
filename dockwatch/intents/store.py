"""Persisted intent access for the intent evaluator and executor."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, ContextManager, List, Optional

from sqlalchemy.orm import Session

from dockwatch.database.connection import get_db_session
from dockwatch.database.models import Intent, IntentExecution, SCHEDULE_IMMEDIATE, SCHEDULE_SCHEDULED
from dockwatch.database.repositories import RepositoryFactory, repository_scope

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Execution was interrupted (server restart detected)"


class IntentStore:
    """Intents and intent executions, backed by the repositories.

    Returned ORM objects are detached from their session; they are
    read-only snapshots.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], ContextManager[Session]]] = None,
    ) -> None:
        self._session_factory = session_factory or get_db_session

    def _repos(self, action: str) -> ContextManager[RepositoryFactory]:
        return repository_scope(self._session_factory, action)

    def get_user_ids(self) -> List[int]:
        with self._repos("load users") as repos:
            return repos.users.get_all_ids()

    def get_intent(self, intent_id: int) -> Optional[Intent]:
        with self._repos("load intent") as repos:
            return repos.intents.get_by_id(intent_id)

    def get_scheduled_intents(self, user_id: int) -> List[Intent]:
        """Enabled cron-scheduled intents of a user."""
        with self._repos("load scheduled intents") as repos:
            return repos.intents.get_enabled(user_id, SCHEDULE_SCHEDULED)

    def get_immediate_intents(self, user_id: int) -> List[Intent]:
        """Enabled scan-triggered intents of a user."""
        with self._repos("load immediate intents") as repos:
            return repos.intents.get_enabled(user_id, SCHEDULE_IMMEDIATE)

    def update_last_evaluated(
        self,
        intent_id: int,
        evaluated_at: datetime,
        execution_id: Optional[int] = None,
    ) -> None:
        """Persist the consumed cron boundary for an intent."""
        with self._repos("update intent last evaluated time") as repos:
            repos.intents.update_last_evaluated(intent_id, evaluated_at, execution_id)

    def create_execution(
        self,
        intent_id: int,
        user_id: int,
        trigger_type: str,
        started_at: Optional[datetime] = None,
    ) -> int:
        with self._repos("create intent execution") as repos:
            return repos.intent_executions.create(
                intent_id, user_id, trigger_type, started_at=started_at
            ).id

    def finish_execution(self, execution_id: int, status: str, **fields) -> Optional[IntentExecution]:
        """Move an execution to ``completed`` or ``failed`` with its counts."""
        with self._repos("finish intent execution") as repos:
            return repos.intent_executions.finish(execution_id, status, **fields)

    def sweep_stale_executions(self, message: str = INTERRUPTED_MESSAGE) -> int:
        """Fail every execution left running by a previous process.

        Returns:
            Number of executions failed
        """
        with self._repos("sweep running intent executions") as repos:
            count = repos.intent_executions.fail_running(message)
        if count:
            logger.warning(f"Marked {count} interrupted intent execution(s) as failed")
        return count
