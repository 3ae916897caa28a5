import re
import time

import psutil
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ── Metric definitions ──

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)

deployments_total = Counter(
    "deployments_total",
    "Deployment attempts by outcome",
    ["outcome"],
)

deployment_duration_seconds = Histogram(
    "deployment_duration_seconds",
    "End-to-end deployment time in seconds",
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

health_check_attempts_total = Counter(
    "health_check_attempts_total",
    "Health check attempts made during validation",
    ["result"],
)

rollbacks_total = Counter(
    "rollbacks_total",
    "Rollback attempts by outcome",
    ["outcome"],
)

reconcile_records_total = Counter(
    "reconcile_records_total",
    "Deployment records repaired by reconciliation",
    ["phase"],
)

active_requests = Gauge("active_requests", "Number of in-flight requests")

memory_usage_bytes = Gauge("memory_usage_bytes", "Process RSS memory in bytes")


# ── Path normalization ──

def normalize_path(path: str) -> str:
    """Normalize dynamic path segments to prevent metric label explosion."""
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "projects":
        return "/projects/{id}/" + "/".join(parts[2:]) if len(parts) > 2 else "/projects/{id}"
    if len(parts) == 2 and parts[0] == "status":
        return "/status/{project_id}"
    return path


# ── Helper functions ──

def record_deployment(outcome: str, duration_seconds: float):
    """Record a finished deployment attempt."""
    deployments_total.labels(outcome=outcome).inc()
    deployment_duration_seconds.observe(duration_seconds)


def record_health_attempt(result: str):
    health_check_attempts_total.labels(result=result).inc()


def record_rollback(outcome: str):
    rollbacks_total.labels(outcome=outcome).inc()


def record_reconciled(phase: str, count: int):
    if count:
        reconcile_records_total.labels(phase=phase).inc(count)


def update_memory_metric():
    """Update the memory usage gauge."""
    process = psutil.Process()
    memory_usage_bytes.set(process.memory_info().rss)


def metrics_response() -> Response:
    """Generate Prometheus metrics response."""
    update_memory_metric()
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ── Container stats adapter ──

BYTE_UNITS = {
    "B": 1,
    "KB": 1_000, "kB": 1_000, "KiB": 1_024,
    "MB": 1_000_000, "MiB": 1_048_576,
    "GB": 1_000_000_000, "GiB": 1_073_741_824,
    "TB": 1_000_000_000_000, "TiB": 1_099_511_627_776,
}

_SIZE = re.compile(r"^([\d.]+)\s*([A-Za-z]+)?$")

EMPTY_CONTAINER_METRICS = {
    "running": False,
    "cpu": 0.0,
    "memoryUsed": 0.0,
    "memoryLimit": 0.0,
    "memoryPercent": 0.0,
    "netIn": 0.0,
    "netOut": 0.0,
    "blockIn": 0.0,
    "blockOut": 0.0,
    "pids": 0,
}


def parse_percent(value: str) -> float:
    try:
        return float(value.strip().rstrip("%"))
    except (ValueError, AttributeError):
        return 0.0


def parse_bytes(value: str) -> float:
    match = _SIZE.match(value.strip()) if value else None
    if not match:
        return 0.0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0.0
    return number * BYTE_UNITS.get(match.group(2) or "B", 1)


def parse_io_pair(value: str) -> tuple[float, float]:
    """Parse docker's "1.2MB / 456kB" style pairs into (in, out) bytes."""
    parts = [p.strip() for p in (value or "").split("/")]
    first = parts[0] if parts else "0B"
    second = parts[1] if len(parts) > 1 else "0B"
    return parse_bytes(first), parse_bytes(second)


def container_metrics(stats: dict | None) -> dict:
    """Convert a raw ``docker stats`` JSON row into numbers."""
    if not stats:
        return dict(EMPTY_CONTAINER_METRICS)

    used, _, limit = stats.get("MemUsage", "0B / 0B").partition("/")
    net_in, net_out = parse_io_pair(stats.get("NetIO", "0B / 0B"))
    block_in, block_out = parse_io_pair(stats.get("BlockIO", "0B / 0B"))
    try:
        pids = int(stats.get("PIDs", "0"))
    except ValueError:
        pids = 0

    return {
        "running": True,
        "cpu": parse_percent(stats.get("CPUPerc", "0%")),
        "memoryUsed": parse_bytes(used),
        "memoryLimit": parse_bytes(limit),
        "memoryPercent": parse_percent(stats.get("MemPerc", "0%")),
        "netIn": net_in,
        "netOut": net_out,
        "blockIn": block_in,
        "blockOut": block_out,
        "pids": pids,
    }


# ── Middleware ──

class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        active_requests.inc()
        start = time.perf_counter()
        normalized = normalize_path(request.url.path)

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start

            http_requests_total.labels(
                method=request.method,
                path=normalized,
                status_code=response.status_code,
            ).inc()

            http_request_duration_seconds.labels(
                method=request.method,
                path=normalized,
            ).observe(duration)

            return response
        except Exception:
            http_requests_total.labels(
                method=request.method,
                path=normalized,
                status_code=500,
            ).inc()
            raise
        finally:
            active_requests.dec()
