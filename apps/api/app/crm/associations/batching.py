from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.associations.errors import InternalError
from app.metrics import observe_batch_commit


logger = logging.getLogger("app.crm.associations.batch")


class Throttle:
    """Sleep for ``cooldown_seconds`` after every ``burst`` units of work."""

    def __init__(
        self,
        burst: int | None = None,
        cooldown_seconds: float | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.burst = burst if burst is not None else settings.association_throttle_burst
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.association_throttle_cooldown_seconds
        )
        self._sleep = sleep
        self.count = 0

    def record(self) -> bool:
        """Count one unit of work and report whether a cooldown is now due."""
        self.count += 1
        return self.burst > 0 and self.cooldown_seconds > 0 and self.count % self.burst == 0

    def cooldown(self) -> None:
        self._sleep(self.cooldown_seconds)


class BatchCommitter:
    """Stage document mutations and commit them in bounded transactions.

    A batch is committed as soon as it holds ``max_mutations`` mutations and
    once more on ``close()``. Committed batches stay applied if a later batch
    fails, so callers must be safe to re-run.

    With a ``throttle`` the batch is also committed at the end of each burst,
    and the cooldown only starts once that commit has landed, so no
    transaction stays open while sleeping. ``on_commit`` receives the keys of
    the mutations in each batch right after it commits.
    """

    def __init__(
        self,
        session: Session,
        *,
        job_type: str,
        max_mutations: int | None = None,
        throttle: Throttle | None = None,
        on_commit: Callable[[list[Any]], None] | None = None,
    ) -> None:
        limit = max_mutations if max_mutations is not None else get_settings().association_batch_max_mutations
        if limit < 1:
            raise ValueError("max_mutations must be positive")
        self.session = session
        self.job_type = job_type
        self.max_mutations = limit
        self.throttle = throttle
        self.on_commit = on_commit
        self.pending = 0
        self.committed = 0
        self.batches = 0
        self._keys: list[Any] = []

    def __enter__(self) -> BatchCommitter:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is not None:
            self.discard()
            return
        self.flush()

    def update(self, instance: Any, values: dict[str, Any], *, key: Any = None) -> None:
        for name, value in values.items():
            setattr(instance, name, value)
        self.session.add(instance)
        self._staged(instance if key is None else key)

    def delete(self, instance: Any, *, key: Any = None) -> None:
        self.session.delete(instance)
        self._staged(instance if key is None else key)

    def _staged(self, key: Any) -> None:
        self.pending += 1
        self._keys.append(key)
        throttle = self.throttle
        cooldown_due = throttle is not None and throttle.record()
        if self.pending >= self.max_mutations or cooldown_due:
            self.flush()
        if throttle is not None and cooldown_due:
            throttle.cooldown()

    def flush(self) -> None:
        if self.pending == 0:
            return
        size = self.pending
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.discard()
            logger.error(
                "batch.failed",
                extra={"job_type": self.job_type, "batch_size": size, "error": str(exc)[:500]},
            )
            raise InternalError(f"batch commit failed after {self.committed} committed mutations") from exc
        keys, self._keys = self._keys, []
        self.pending = 0
        self.committed += size
        self.batches += 1
        observe_batch_commit(job_type=self.job_type, mutations=size)
        logger.info(
            "batch.committed",
            extra={"job_type": self.job_type, "batch_size": size, "committed": self.committed},
        )
        if self.on_commit is not None:
            self.on_commit(keys)

    def discard(self) -> None:
        self.session.rollback()
        self.pending = 0
        self._keys = []

    def close(self) -> None:
        self.flush()
