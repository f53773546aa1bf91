"""
Request-scoped tracing for TrafficCheck lookups.

A thread-local TraceContext collects:
  - stage timings (fetch_stations, fetch_volume_map, select, ...)
  - outbound calls (ArcGIS layers, Google Maps proxy) with status
  - one summary line per request

Usage:
    from tc_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id=g.request_id)
    set_trace(ctx)
    with ctx.stage("select"):
        ...
    ctx.log_summary()
    clear_trace()

Worker threads do not inherit thread-locals; callers that fan out must
set_trace(parent) inside the worker.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP call."""
    service: str          # "arcgis" | "google_maps"
    endpoint: str         # "stations", "volume_map", "geocode", ...
    elapsed_ms: int
    status_code: int      # 0 when no response was received
    provider_status: str = ""   # "rate_limit", "timeout", Google "OK", ...
    retried: bool = False
    stage: str = ""


@dataclass
class StageRecord:
    """One timed step of a request."""
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _local_stage: threading.local = field(default_factory=threading.local, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def current_stage(self) -> str:
        # Stage names are per-thread so parallel layer fetches attribute
        # their calls correctly.
        return getattr(self._local_stage, "name", "")

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Time a block and record it as a stage; exceptions propagate."""
        previous = self.current_stage
        self._local_stage.name = name
        t0 = time.time()
        error_class = ""
        error_message = ""
        try:
            yield
        except Exception as e:
            error_class = type(e).__name__
            error_message = str(e)
            raise
        finally:
            self._local_stage.name = previous
            self.record_stage(name, t0, time.time(), error_class, error_message)

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            calls = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=calls,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id,
            stage_name,
            "ERR" if error_class else "OK",
            rec.elapsed_ms,
            calls,
            err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        retried: bool = False,
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
            stage=self.current_stage,
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            rec.stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        completed = [s for s in self.stages if not s.error_class]

        if errored and not completed:
            outcome = "error"
        elif not self.stages:
            outcome = "empty"
        elif errored:
            outcome = "partial"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages_completed": len(completed),
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["stages_completed"],
            s["stages_errored"],
            s["final_outcome"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus per-stage and per-call detail, for debug output."""
        summary = self.summary_dict()
        summary["stages"] = [
            {
                "stage": s.stage_name,
                "elapsed_ms": s.elapsed_ms,
                "api_calls": s.api_calls_made,
                "error": (
                    f"{s.error_class}: {s.error_message}"
                    if s.error_class else None
                ),
            }
            for s in self.stages
        ]
        summary["api_calls"] = [
            {
                "service": c.service,
                "endpoint": c.endpoint,
                "elapsed_ms": c.elapsed_ms,
                "status_code": c.status_code,
                "provider_status": c.provider_status,
                "retried": c.retried,
                "stage": c.stage,
            }
            for c in self.api_calls
        ]
        return summary


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
