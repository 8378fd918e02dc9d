# cli.py
import asyncio
import json
import logging
import time

import click

from config import DB_FILE, DEFAULT_CONFIG, Settings, validate_config
from errors import JobStreamError
from event_log import EventLog, stream_key
from jobs import JobStore
from models import STATUSES
from storage import Storage


def _store(ctx):
    storage = ctx.obj["storage"]
    return JobStore(storage)


@click.group()
@click.option("--db", "db_path", default=DB_FILE, envvar="JOBSTREAM_DB", show_default=True, help="sqlite file holding jobs, queue and events")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    """jobstream - background jobs with live progress streams"""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["storage"] = Storage(db_path)
    ctx.call_on_close(ctx.obj["storage"].close)


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--data", "raw_data", required=True, help="Job payload as JSON (plain text is taken as a string)")
@click.pass_context
def enqueue(ctx, raw_data):
    """Add a new job to the queue"""
    try:
        data = json.loads(raw_data)
    except ValueError:
        data = raw_data

    try:
        job = _store(ctx).create_job(data)
    except JobStreamError as e:
        click.echo(f"❌ Failed to enqueue job: {e.message}")
        raise SystemExit(1)
    click.echo(f"✅ Job {job.id} enqueued.")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", default=None, type=click.Choice(STATUSES), help="Filter jobs by status")
@click.pass_context
def list_jobs(ctx, status):
    """List jobs"""
    rows = _store(ctx).list_jobs(status=status)
    if not rows:
        click.echo("No jobs found.")
        return

    for job in rows:
        duration = f"{(job.updated - job.created) / 1000:.3f}s" if job.is_terminal else "-"
        click.echo(f"{job.id} | status={job.status} | created={job.created} | duration={duration} | data={json.dumps(job.data)[:40]}")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job states"""
    store = _store(ctx)
    counts = store.counts()
    if not any(counts.values()):
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for state, count in counts.items():
        click.echo(f"  {state}: {count}")
    click.echo(f"  queued: {len(store.queue_ids())}")

    stuck = store.in_flight()
    if stuck:
        click.echo(f"  in flight: {', '.join(j.id for j in stuck)}")


# ---------------- Show ----------------
@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    job = _store(ctx).get_job(job_id)
    if job is None:
        click.echo(f"❌ Job {job_id} not found.")
        raise SystemExit(1)

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Created: {job.created}")
    click.echo(f"  Updated: {job.updated}")
    click.echo(f"  Data: {json.dumps(job.data)}")
    click.echo(f"  Error: {job.error or '-'}")
    events = EventLog(ctx.obj["storage"])
    click.echo(f"  Events retained: {events.length(stream_key(job.id))}")
    click.echo("  Output:")
    click.echo(json.dumps(job.output, indent=2) if job.output is not None else "(no output)")


# ---------------- Worker ----------------
@cli.command()
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.option("--step-delay", default=None, type=float, help="Delay per unit of work (seconds) (uses config if set)")
@click.option("--steps", default=None, type=int, help="Units of work per job (uses config if set)")
@click.pass_context
def worker(ctx, poll_interval, step_delay, steps):
    """Run the queue worker in the foreground"""
    from worker import Worker

    storage = ctx.obj["storage"]
    settings = Settings.from_storage(storage, poll_interval=poll_interval, step_delay=step_delay, steps=steps)
    w = Worker(JobStore(storage), EventLog(storage), worker_id="worker-1", **settings.worker_kwargs())

    click.echo(f"🚀 Starting {w.worker_id} (poll={w.poll_interval}s, steps={w.steps}, step_delay={w.step_delay}s)")
    click.echo("Press Ctrl+C to stop the worker.")
    try:
        asyncio.run(w.run())
    except KeyboardInterrupt:
        click.echo("\n🛑 Worker stopped.")


# ---------------- Server ----------------
@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=3000, show_default=True, type=int)
@click.option("--no-worker", is_flag=True, help="Serve only; run `worker` as a separate process")
@click.pass_context
def serve(ctx, host, port, no_worker):
    """Serve the HTTP API and dashboard"""
    import uvicorn
    from dashboard import create_app

    # The app opens its own connection on startup
    ctx.obj["storage"].close()
    app = create_app(run_worker=not no_worker, db_path=ctx.obj["db_path"])
    click.echo(f"🌐 Serving on http://{host}:{port} (worker {'off' if no_worker else 'on'})")
    uvicorn.run(app, host=host, port=port)


# ---------------- Monitor ----------------
@cli.command()
@click.argument("job_id")
@click.option("--interval", default=1.0, show_default=True, type=float, help="Polling interval (seconds)")
@click.option("--once", is_flag=True, help="Print what is in the log now and exit")
@click.pass_context
def monitor(ctx, job_id, interval, once):
    """Follow a job's event log"""
    events = EventLog(ctx.obj["storage"])
    key = stream_key(job_id)
    click.echo(f"🔍 Monitoring stream: {key}")

    last_id = 0
    try:
        while True:
            entries = events.read_range(key, last_id, 100)
            if entries:
                last_id = entries[-1].id
                click.echo(f"⚡ Found {len(entries)} new messages:")
                for entry in entries:
                    click.echo(f"  {entry.id}: {json.dumps(entry.fields)}")
            if once:
                return
            if entries and len(entries) == 100:
                continue
            time.sleep(interval)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping monitor...")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for the worker and stream relay"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    try:
        validate_config(key, value)
    except ValueError as e:
        raise click.ClickException(str(e))
    ctx.obj["storage"].set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx, key):
    """Get a config key"""
    value = ctx.obj["storage"].get_config(key)
    if value is None:
        if key in DEFAULT_CONFIG:
            click.echo(f"{key}={DEFAULT_CONFIG[key]} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List effective config values"""
    stored = {row["key"]: row for row in ctx.obj["storage"].list_config()}
    for key in sorted(DEFAULT_CONFIG):
        row = stored.get(key)
        if row:
            click.echo(f"{key}={row['value']} (updated_at={row['updated_at']})")
        else:
            click.echo(f"{key}={DEFAULT_CONFIG[key]} (default)")


# ---------------- Legacy import ----------------
@cli.command()
@click.option("--jobs-file", default="jobs.json", show_default=True, type=click.Path(dir_okay=False))
@click.option("--queue-file", default="queue.json", show_default=True, type=click.Path(dir_okay=False))
@click.pass_context
def migrate(ctx, jobs_file, queue_file):
    """Import jobs.json / queue.json into the database"""
    from migrate import import_legacy_files

    imported, queued = import_legacy_files(ctx.obj["storage"], jobs_file, queue_file)
    click.echo(f"📦 Imported {imported} job(s), {queued} queued.")


def main():
    cli(obj={})


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    main()
