"""
Request-scoped tracing for Dwelligence search requests.

Provides a thread-local TraceContext that records:
  - Per-stage timing (parsing, filtering, amenity_filtering, ...)
  - Per-upstream-call timing (google_maps, gemini)
  - End-of-request summary (total elapsed, call count, outcome)

Usage:
    from dw_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the request handler (app.py):
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In upstream clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class APICallRecord:
    """One outbound call to an external capability."""
    service: str          # "google_maps" | "gemini"
    endpoint: str         # "distance_matrix", "parse_query", ...
    elapsed_ms: int
    ok: bool
    provider_status: str = ""
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    skipped: bool = False
    error_class: str = ""
    error_message: str = ""


@dataclass
class TraceContext:
    """Accumulates timing data for a single request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _current_stage: str = ""

    @contextmanager
    def stage(self, name: str):
        """Time a pipeline stage; exceptions are recorded and re-raised."""
        previous = self._current_stage
        self._current_stage = name
        t0 = time.time()
        error: Optional[BaseException] = None
        try:
            yield self
        except Exception as exc:
            error = exc
            raise
        finally:
            self._current_stage = previous
            self.record_stage(
                name,
                int((time.time() - t0) * 1000),
                error_class=type(error).__name__ if error else "",
                error_message=str(error) if error else "",
            )

    def record_stage(
        self,
        stage_name: str,
        elapsed_ms: int,
        skipped: bool = False,
        error_class: str = "",
        error_message: str = "",
    ):
        api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
        rec = StageRecord(
            stage_name=stage_name,
            elapsed_ms=elapsed_ms,
            api_calls_made=api_in_stage,
            skipped=skipped,
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(rec)

        status = "SKIP" if skipped else ("ERR" if error_class else "OK")
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id, stage_name, status, elapsed_ms, api_in_stage, err_info,
        )

    def skip_stage(self, stage_name: str):
        self.record_stage(stage_name, 0, skipped=True)

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        ok: bool,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            ok=ok,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d ok=%s provider=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            ok,
            provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        completed = [s for s in self.stages if not s.skipped and not s.error_class]
        skipped = [s for s in self.stages if s.skipped]
        errored = [s for s in self.stages if s.error_class]

        if errored and not completed:
            outcome = "error"
        elif not completed and not errored:
            outcome = "empty"
        elif errored:
            outcome = "partial"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "failed_api_calls": sum(1 for c in self.api_calls if not c.ok),
            "stages_completed": len(completed),
            "stages_skipped": len(skipped),
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d failed=%d "
            "completed=%d skipped=%d errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["failed_api_calls"],
            s["stages_completed"],
            s["stages_skipped"],
            s["stages_errored"],
            s["final_outcome"],
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[trace-stages] trace=%s stages=%s", s["trace_id"], self.stages_to_list())

    def stages_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "stage": s.stage_name,
                "elapsed_ms": s.elapsed_ms,
                "api_calls": s.api_calls_made,
                "skipped": s.skipped,
                "error": f"{s.error_class}: {s.error_message}" if s.error_class else None,
            }
            for s in self.stages
        ]


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None


@contextmanager
def traced_stage(name: str):
    """Stage timer that is a no-op outside a traced request."""
    trace = get_trace()
    if trace is None:
        yield None
        return
    with trace.stage(name):
        yield trace


def skip_traced_stage(name: str):
    """Record *name* as skipped on the current trace, if any."""
    trace = get_trace()
    if trace is not None:
        trace.skip_stage(name)
