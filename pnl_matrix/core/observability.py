"""
Observability Infrastructure for the P&L service

Provides request tracing with per-operation spans, so a slow or failing
year build can be attributed to the backing-store query responsible.

Key Capabilities:
- Trace: complete execution path of one UI-facing request
- Span: individual operation within a trace (store query, formula chain, export)
- Metrics: row counts and latency per span

Active trace and span stack live in context variables: concurrent builds
in one event loop never share a trace, and tasks spawned by asyncio.gather
inherit their parent span.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
from contextlib import contextmanager
from enum import Enum
import itertools
import time
import json
import logging
from pathlib import Path
import hashlib

logger = logging.getLogger(__name__)


class SpanKind(Enum):
    """Types of spans for categorization."""
    REQUEST = "request"
    DATA_RETRIEVAL = "data_retrieval"
    CALCULATION = "calculation"
    EXPORT = "export"


class SpanStatus(Enum):
    """Outcome status of a span."""
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class Span:
    """Individual operation in a trace."""
    span_id: str
    name: str
    kind: SpanKind
    start_time: datetime
    end_time: Optional[datetime] = None
    status: SpanStatus = SpanStatus.OK
    parent_span_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        """Calculate span duration in milliseconds."""
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds() * 1000
        return 0

    def add_event(self, name: str, attributes: Dict[str, Any] = None):
        """Add a timestamped event to the span."""
        self.events.append({
            "name": name,
            "timestamp": datetime.utcnow().isoformat(),
            "attributes": attributes or {}
        })

    def set_error(self, error: BaseException):
        """Mark span as errored."""
        self.status = SpanStatus.ERROR
        self.error_message = f"{type(error).__name__}: {str(error)}"
        self.add_event("exception", {
            "type": type(error).__name__,
            "message": str(error)
        })

    def to_dict(self) -> Dict[str, Any]:
        """Serialize span for export."""
        return {
            "span_id": self.span_id,
            "name": self.name,
            "kind": self.kind.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "parent_span_id": self.parent_span_id,
            "attributes": self.attributes,
            "events": self.events,
            "error_message": self.error_message,
        }


@dataclass
class Trace:
    """Complete execution trace for one request."""
    trace_id: str
    operation: str
    start_time: datetime
    end_time: Optional[datetime] = None
    channel: Optional[str] = None  # "api", "cli"
    attributes: Dict[str, Any] = field(default_factory=dict)

    spans: List[Span] = field(default_factory=list)

    # Outcome
    status: SpanStatus = SpanStatus.OK
    error_message: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        """Total trace duration in milliseconds."""
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds() * 1000
        return 0

    @property
    def total_rows(self) -> int:
        """Rows returned by every backing-store span."""
        return sum(
            s.attributes.get("row_count", 0)
            for s in self.spans
            if s.kind == SpanKind.DATA_RETRIEVAL
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize trace for export."""
        return {
            "trace_id": self.trace_id,
            "operation": self.operation,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "channel": self.channel,
            "attributes": self.attributes,
            "status": self.status.value,
            "error_message": self.error_message,
            "metrics": {
                "span_count": len(self.spans),
                "total_rows": self.total_rows,
            },
            "spans": [s.to_dict() for s in self.spans],
        }


_current_trace: ContextVar[Optional[Trace]] = ContextVar("pnl_current_trace", default=None)
_span_stack: ContextVar[Tuple[Span, ...]] = ContextVar("pnl_span_stack", default=())


class Tracer:
    """
    Tracer for managing traces and spans.

    Usage:
        tracer = get_tracer()

        with tracer.start_trace("build_year_tree", channel="api", year=2025):
            with tracer.start_span("fetch_revenue_lines", SpanKind.DATA_RETRIEVAL) as span:
                rows = client.fetch_revenue_lines(2025)
                span.attributes["row_count"] = len(rows)
    """

    def __init__(self, export_dir: Optional[Path] = None):
        self.export_dir = export_dir
        if self.export_dir:
            self.export_dir.mkdir(parents=True, exist_ok=True)
        self._span_counter = itertools.count(1)

    def _generate_trace_id(self, operation: str) -> str:
        """Generate unique trace ID."""
        timestamp = int(time.time() * 1000)
        op_hash = hashlib.md5(f"{operation}{timestamp}{next(self._span_counter)}".encode()).hexdigest()[:8]
        return f"trace_{timestamp}_{op_hash}"

    def _generate_span_id(self) -> str:
        """Generate unique span ID."""
        return f"span_{int(time.time() * 1000)}_{next(self._span_counter)}"

    @contextmanager
    def start_trace(self, operation: str, channel: str = None, **attributes):
        """Start a new trace for a request."""
        trace = Trace(
            trace_id=self._generate_trace_id(operation),
            operation=operation,
            start_time=datetime.utcnow(),
            channel=channel,
            attributes=attributes,
        )
        trace_token = _current_trace.set(trace)
        stack_token = _span_stack.set(())

        logger.info(f"Started trace {trace.trace_id} for {operation} {attributes}")

        try:
            yield trace
            trace.status = SpanStatus.OK
        except BaseException as e:
            trace.status = SpanStatus.ERROR
            trace.error_message = f"{type(e).__name__}: {str(e)}"
            raise
        finally:
            trace.end_time = datetime.utcnow()
            _span_stack.reset(stack_token)
            _current_trace.reset(trace_token)
            self._export_trace(trace)
            logger.info(
                f"Completed trace {trace.trace_id} "
                f"in {trace.duration_ms:.0f}ms, "
                f"spans={len(trace.spans)}, rows={trace.total_rows}, "
                f"status={trace.status.value}"
            )

    @contextmanager
    def start_span(
        self,
        name: str,
        kind: SpanKind,
        attributes: Dict[str, Any] = None,
    ):
        """Start a new span within the current trace."""
        trace = _current_trace.get()
        if trace is None:
            # No active trace - create a dummy context
            yield None
            return

        stack = _span_stack.get()
        span = Span(
            span_id=self._generate_span_id(),
            name=name,
            kind=kind,
            start_time=datetime.utcnow(),
            parent_span_id=stack[-1].span_id if stack else None,
            attributes=attributes or {},
        )

        token = _span_stack.set(stack + (span,))
        trace.spans.append(span)

        try:
            yield span
            span.status = SpanStatus.OK
        except BaseException as e:
            span.set_error(e)
            raise
        finally:
            span.end_time = datetime.utcnow()
            _span_stack.reset(token)

            logger.debug(
                f"Span {name} completed in {span.duration_ms:.0f}ms"
                + (f" (error: {span.error_message})" if span.error_message else "")
            )

    @property
    def current_trace(self) -> Optional[Trace]:
        return _current_trace.get()

    @property
    def current_span(self) -> Optional[Span]:
        stack = _span_stack.get()
        return stack[-1] if stack else None

    def _export_trace(self, trace: Trace):
        """Export trace to a JSON file when an export directory is configured."""
        if not self.export_dir:
            return

        filepath = self.export_dir / f"{trace.trace_id}.json"
        try:
            with open(filepath, 'w') as f:
                json.dump(trace.to_dict(), f, indent=2, default=str)
            logger.debug(f"Exported trace to {filepath}")
        except OSError as e:
            logger.error(f"Failed to export trace: {e}")


# Global tracer instance
_tracer: Optional[Tracer] = None


def get_tracer() -> Tracer:
    """Get the global tracer instance."""
    global _tracer
    if _tracer is None:
        from config.settings import get_config
        _tracer = Tracer(export_dir=get_config().observability.export_path)
    return _tracer


def reset_tracer():
    """Reset the global tracer (for testing)."""
    global _tracer
    _tracer = None
