from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
requests_submitted_total = Counter(
    "bookjobs_requests_submitted_total", "Total requests submitted to the engine", ["content_type"]
)
requests_dispatched_total = Counter("bookjobs_requests_dispatched_total", "Execution attempts started by the scheduler")
requests_completed_total = Counter("bookjobs_requests_completed_total", "Requests that completed successfully")
requests_failed_total = Counter("bookjobs_requests_failed_total", "Requests that failed terminally")
requests_cancelled_total = Counter("bookjobs_requests_cancelled_total", "Requests that were cancelled")
requests_retried_total = Counter("bookjobs_requests_retried_total", "Failed attempts re-queued by the retry policy")
listener_errors_total = Counter("bookjobs_listener_errors_total", "Exceptions raised by event listeners")
provider_latency_seconds = Histogram("bookjobs_provider_latency_seconds", "Provider adapter call latency seconds")
request_latency_seconds = Histogram("bookjobs_http_request_latency_seconds", "HTTP request latency seconds")
active_workers = Gauge("bookjobs_active_workers", "Number of workers currently executing a request")
queue_depth = Gauge("bookjobs_queue_depth", "Number of requests waiting in the dispatch queue")


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
