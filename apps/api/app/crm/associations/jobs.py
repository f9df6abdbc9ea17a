from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError

from app.context import get_correlation_id
from app.crm.associations.errors import AssociationError, InternalError
from app.metrics import observe_job
from app.otel import get_tracer


logger = logging.getLogger("app.crm.jobs")
tracer = get_tracer("app.crm.associations")


@contextmanager
def job_run(job_type: str, *, tenant_id: str | None = None, **attributes: Any) -> Iterator[dict[str, Any]]:
    """Log, trace and time one association job.

    The yielded dict is merged into the ``job.finished`` log record, so jobs
    can report their result counts there. Store failures surface as
    ``InternalError``.
    """
    started = time.perf_counter()
    result_fields: dict[str, Any] = {}
    final_status = "Failed"
    base_fields = {"job_type": job_type, "tenant_id": tenant_id, **attributes}

    with tracer.start_as_current_span(f"crm.associations.{job_type}") as span:
        span.set_attribute("job_type", job_type)
        if tenant_id is not None:
            span.set_attribute("tenant_id", tenant_id)
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)

        logger.info("job.started", extra={**base_fields, "status": "Running", "duration_ms": 0.0})
        try:
            try:
                yield result_fields
            except SQLAlchemyError as exc:
                raise InternalError(f"{job_type} failed: {str(exc)[:200]}") from exc
            final_status = "Succeeded"
        except Exception as exc:
            message = exc.message if isinstance(exc, AssociationError) else str(exc)
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, message))
            logger.info(
                "job.finished",
                extra={
                    **base_fields,
                    "status": "Failed",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error": message[:500],
                },
            )
            raise
        finally:
            observe_job(job_type=job_type, status=final_status, duration=time.perf_counter() - started)

        logger.info(
            "job.finished",
            extra={
                **base_fields,
                **result_fields,
                "status": final_status,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
