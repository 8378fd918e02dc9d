# dashboard.py
import asyncio
import html
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel

from config import DB_FILE, Settings
from errors import JobStreamError, ValidationError
from event_log import EventLog
from jobs import JobStore
from models import STATUSES
from relay import JobRelay, format_sse
from storage import Storage
from worker import Worker

logger = logging.getLogger(__name__)

# How long shutdown waits for the worker's current step before cancelling it
WORKER_SHUTDOWN_TIMEOUT = 5.0


class CreateJobBody(BaseModel):
    data: Any = None


# ---------- Error handling ----------
async def _job_error_handler(request: Request, exc: JobStreamError):
    return JSONResponse(content={"error": exc.message}, status_code=exc.status_code)


async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(content={"error": "Invalid request body"}, status_code=400)


async def _generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(content={"error": "Internal server error"}, status_code=500)


def register_error_handlers(app):
    app.add_exception_handler(JobStreamError, _job_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _generic_exception_handler)


def _wire(app, storage, settings=None):
    app.state.storage = storage
    app.state.store = JobStore(storage)
    app.state.events = EventLog(storage)
    app.state.settings = settings or Settings.from_storage(storage)


# ---------- App factory ----------
def create_app(storage=None, settings=None, run_worker=True, db_path=None):
    """Build the HTTP app.

    With no `storage`, the sqlite file is opened at startup and closed at
    shutdown. With `run_worker`, the queue worker runs as a background task
    of the server's event loop.
    """

    @asynccontextmanager
    async def lifespan(app):
        owned = None
        if getattr(app.state, "storage", None) is None:
            owned = Storage(db_path or DB_FILE)
            _wire(app, owned, settings)

        worker_task = None
        if run_worker:
            worker = Worker(app.state.store, app.state.events, **app.state.settings.worker_kwargs())
            app.state.worker = worker
            worker_task = asyncio.create_task(worker.run())

        try:
            yield
        finally:
            if worker_task is not None:
                app.state.worker.stop()
                try:
                    await asyncio.wait_for(worker_task, timeout=WORKER_SHUTDOWN_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.warning("Worker did not stop within %ss; cancelled", WORKER_SHUTDOWN_TIMEOUT)
            if owned is not None:
                owned.close()
                app.state.storage = None

    app = FastAPI(title="jobstream", lifespan=lifespan)
    register_error_handlers(app)
    if storage is not None:
        _wire(app, storage, settings)

    # ---------- Jobs API ----------
    @app.post("/job", status_code=201)
    async def create_job(body: CreateJobBody, request: Request):
        job = request.app.state.store.create_job(body.data)
        return job.to_dict()

    @app.get("/job/{job_id}")
    async def get_job(job_id: str, request: Request):
        return request.app.state.store.require_job(job_id).to_dict()

    @app.get("/job/{job_id}/stream")
    async def stream_job(job_id: str, request: Request,
                         last_event_id: Optional[str] = Header(None, alias="Last-Event-ID")):
        state = request.app.state
        relay = JobRelay(state.store, state.events, job_id, last_event_id=last_event_id,
                         **state.settings.relay_kwargs())
        # Unknown ids fail here, before the stream starts
        relay.open()

        async def event_stream():
            async for event in relay.stream():
                yield format_sse(event)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/jobs")
    async def list_jobs(request: Request, status: Optional[str] = None, limit: Optional[int] = None):
        if status is not None and status not in STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
        return [j.to_dict() for j in request.app.state.store.list_jobs(status=status, limit=limit)]

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/metrics/json")
    async def metrics_json(request: Request):
        store = request.app.state.store
        return {**store.counts(), "queued": len(store.queue_ids())}

    # ---------- HTML ----------
    @app.get("/", response_class=HTMLResponse)
    async def home(request: Request):
        store = request.app.state.store
        rows = store.recent_jobs(limit=50)
        counts = store.counts()

        cards = '<div class="cards">' + "".join(
            f'<div class="card"><h3>{s.capitalize()}</h3><p>{counts[s]}</p></div>' for s in STATUSES
        ) + "</div>"

        table_html = """
        <h2>Recent jobs</h2>
        <table>
          <tr><th>ID</th><th>Status</th><th>Created</th><th>Updated</th><th>Data</th></tr>
        """
        for j in rows:
            data = html.escape(json.dumps(j.data)[:60])
            table_html += (
                f"<tr><td><a href='/job/{j.id}/view'>{j.id}</a></td><td>{j.status}</td>"
                f"<td>{j.created}</td><td>{j.updated}</td><td>{data}</td></tr>"
            )
        table_html += "</table>"
        if not rows:
            table_html += "<p class='muted'>No jobs yet. POST /job or use the CLI enqueue command.</p>"

        return page("Job Queue", cards + table_html)

    @app.get("/job/{job_id}/view", response_class=HTMLResponse)
    async def job_view(job_id: str, request: Request):
        job = request.app.state.store.get_job(job_id)
        if job is None:
            return HTMLResponse(page("Job not found", f"<p>Job {html.escape(job_id)} not found.</p>"), status_code=404)

        body = f"""
          <h2>Job {job.id}</h2>
          <div class="cards">
            <div class="card"><b>Status</b><p id="status">{job.status}</p></div>
            <div class="card"><b>Created</b><p>{job.created}</p></div>
            <div class="card"><b>Updated</b><p>{job.updated}</p></div>
          </div>

          <h3>Data</h3>
          <pre>{html.escape(json.dumps(job.data, indent=2))}</pre>

          <h3>Events</h3>
          <pre id="events"></pre>

          <script>
            const log = document.getElementById('events');
            const source = new EventSource('/job/{job.id}/stream');
            const show = (e) => {{
              const msg = JSON.parse(e.data);
              if (msg.type === 'initial') {{
                document.getElementById('status').textContent = msg.job.status;
                return;
              }}
              log.textContent += `[${{msg.type}}] ${{msg.step ? 'step ' + msg.step + ' ' : ''}}${{msg.data || msg.message || msg.error || ''}}\\n`;
              if (msg.type === 'completed' || msg.type === 'error') {{
                document.getElementById('status').textContent = msg.type === 'completed' ? 'succeeded' : 'failed';
                source.close();
              }}
            }};
            ['initial', 'started', 'progress', 'completed', 'error'].forEach(t => source.addEventListener(t, show));
          </script>
        """
        return page(f"Job {job.id}", body)

    return app


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  pre { background: white; border: 1px solid #ddd; padding: 10px; max-height: 400px; overflow: auto; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{html.escape(title)}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{html.escape(title)}</h1>
      <div class="navbar">
        <a href="/">Home</a>
        <a href="/jobs">Jobs (JSON)</a>
        <a href="/metrics/json">Metrics (JSON)</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


# uvicorn dashboard:app
app = create_app()
