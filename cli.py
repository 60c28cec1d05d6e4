# cli.py
import importlib
import logging
import multiprocessing
import signal
import threading
import time

import click

from batches import BatchService
from errors import BatchError, BatchNotFoundError, InvalidConfigError, JobNotFoundError
from feedback import ChunkSizeAdvisor
from queue_client import SQLiteQueue
from retry import RetryPolicy
from settings import load_settings
from storage import Storage
from worker import Worker


def load_processor(path):
    """Resolve ``package.module:function`` to the callable that processes one chunk."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise click.BadParameter(f"expected module:function, got {path!r}", param_hint="--processor")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"cannot import {module_name}: {e}", param_hint="--processor") from e
    processor = getattr(module, attr, None)
    if not callable(processor):
        raise click.BadParameter(f"{path} is not callable", param_hint="--processor")
    return processor


def _storage(ctx):
    return Storage(ctx.obj["db_path"])


def _service(ctx):
    return BatchService(_storage(ctx))


@click.group()
@click.option("--db", "db_path", default=None, envvar="BATCHCTL_DB", help="SQLite database path (default batchctl.db)")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    """batchctl - chunked batch job distribution"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


# ---------------- Plan (dry run) ----------------
@cli.command()
@click.option("--total", "total_records", required=True, type=int, help="Number of records in the batch")
@click.option("--chunk-size", default=None, type=int, help="Records per job (uses config if set)")
@click.option("--max-attempts", default=None, type=int, help="Attempts per job before dead-lettering")
@click.option("--show-jobs/--no-show-jobs", default=False, help="Print every chunk range")
@click.pass_context
def plan(ctx, total_records, chunk_size, max_attempts, show_jobs):
    """Partition a record set without enqueueing anything"""
    service = _service(ctx)
    try:
        manifest, jobs = service.plan(total_records=total_records, chunk_size=chunk_size, max_attempts=max_attempts)
    except InvalidConfigError as e:
        raise click.ClickException(str(e))
    click.echo(f"📦 Batch {manifest.batch_id} (dry run)")
    click.echo(f"  Records: {manifest.total_records}")
    click.echo(f"  Chunk size: {manifest.chunk_size}")
    click.echo(f"  Jobs: {manifest.job_count}")
    click.echo(f"  Max attempts: {manifest.max_attempts}")
    if show_jobs:
        for job in jobs:
            click.echo(f"  {job.id} | [{job.chunk_start}, {job.chunk_end}) | size={job.size}")
    advice = service.advisor.recommend(manifest.chunk_size)
    if advice.should_reduce:
        click.echo(f"⚠️ Queue under pressure: consider --chunk-size {advice.recommended_chunk_size} ({advice.reason})")


# ---------------- Worker ----------------
def _run_worker_process(db_path, processor_path, worker_id, options, stop_event):
    # the parent owns Ctrl+C and tells us to stop through stop_event
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    w = Worker(load_processor(processor_path), db_path=db_path, worker_id=worker_id,
               stop_event=stop_event, **options)
    w.run()


@cli.command()
@click.option("--processor", "processor_path", required=True, help="module:function run on each chunk")
@click.option("--count", default=1, show_default=True, help="Number of worker processes to start")
@click.option("--concurrency", default=None, type=int, help="Concurrent leases per process (uses config if set)")
@click.option("--lease-seconds", default=None, type=float, help="Lease duration (uses config if set)")
@click.option("--max-attempts", default=None, type=int, help="Fallback attempt limit (uses config if set)")
@click.option("--backoff-base", default=None, type=float, help="Backoff base in seconds (uses config if set)")
@click.option("--backoff-cap", default=None, type=float, help="Maximum retry delay (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (uses config if set)")
@click.option("--job-timeout", default=None, type=float, help="Stop extending a lease after this many seconds")
@click.option("--drain", is_flag=True, help="Exit once no job is ready (single process only)")
@click.pass_context
def worker(ctx, processor_path, count, concurrency, lease_seconds, max_attempts, backoff_base, backoff_cap,
           poll_interval, job_timeout, drain):
    """Start worker processes with leases and graceful shutdown"""
    db = _storage(ctx)
    try:
        settings = load_settings(db, worker_concurrency=concurrency, lease_seconds=lease_seconds,
                                 max_attempts=max_attempts, backoff_base=backoff_base,
                                 backoff_cap=backoff_cap, poll_interval=poll_interval)
    except InvalidConfigError as e:
        raise click.ClickException(str(e))
    processor = load_processor(processor_path)
    options = dict(
        concurrency=settings.worker_concurrency,
        lease_seconds=settings.lease_seconds,
        poll_interval=settings.poll_interval,
        retry_policy=RetryPolicy(settings.backoff_base, settings.backoff_cap, settings.max_attempts),
        job_timeout=job_timeout,
        error_sample_limit=settings.error_sample_limit,
    )
    summary = (f"concurrency={settings.worker_concurrency}, lease={settings.lease_seconds}s, "
               f"backoff={settings.backoff_base}s..{settings.backoff_cap}s, poll={settings.poll_interval}s")

    if drain:
        try:
            w = Worker(processor, db=db, worker_id="worker-drain", **options)
        except InvalidConfigError as e:
            raise click.ClickException(str(e))
        handled = w.drain()
        click.echo(f"✅ Drained {handled} job(s): {dict(w.stats)}")
        return

    if count == 1:
        stop_event = threading.Event()
        try:
            w = Worker(processor, db=db, worker_id="worker-1", stop_event=stop_event, **options)
        except InvalidConfigError as e:
            raise click.ClickException(str(e))
        runners = [threading.Thread(target=w.run, name="worker-1", daemon=True)]
    else:
        stop_event = multiprocessing.Event()
        runners = [
            multiprocessing.Process(
                target=_run_worker_process,
                args=(db.db_path, processor_path, f"worker-{i + 1}", options, stop_event),
                name=f"worker-{i + 1}",
            )
            for i in range(count)
        ]

    for r in runners:
        click.echo(f"🚀 Starting {r.name} ({summary})")
        r.start()
    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        while any(r.is_alive() for r in runners):
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        stop_event.set()
        for r in runners:
            r.join(timeout=settings.lease_seconds)
        click.echo("✅ Workers stopped cleanly.")


# ---------------- Status ----------------
def _echo_status(status):
    flag = "✅ terminal" if status.terminal else ("🛑 cancelled" if status.cancelled else "⏳ running")
    click.echo(f"📊 Batch {status.batch_id} [{status.state}] {flag}")
    click.echo(f"  Jobs: {status.total} (records={status.total_records}, chunk_size={status.chunk_size})")
    click.echo(f"  Succeeded: {status.succeeded}")
    click.echo(f"  Failed (in retry): {status.failed_in_retry}")
    click.echo(f"  Dead-lettered: {status.dead_lettered}")
    click.echo(f"  Failed attempts: {status.failed_attempts}")


@cli.command()
@click.argument("batch_id")
@click.option("--errors/--no-errors", default=False, help="Show recent error samples")
@click.pass_context
def status(ctx, batch_id, errors):
    """Show progress of a batch"""
    service = _service(ctx)
    try:
        batch_status = service.get_batch_status(batch_id)
    except BatchNotFoundError as e:
        raise click.ClickException(str(e))
    _echo_status(batch_status)
    counts = service.queue.count_by_state(batch_id)
    click.echo("  Jobs by state: " + ", ".join(f"{state}={n}" for state, n in counts.items()))
    if errors:
        click.echo("  Recent errors:")
        for sample in batch_status.error_samples or ["(none)"]:
            click.echo(f"    {sample}")


@cli.command(name="list")
@click.option("--state", default=None, help="Filter batches by state (active, completed, cancelled)")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def list_batches(ctx, state, limit):
    """List batches"""
    batches = _service(ctx).list_batches(state=state, limit=limit)
    if not batches:
        click.echo("No batches found.")
        return
    for b in batches:
        click.echo(f"{b.batch_id} | state={b.state} | succeeded={b.succeeded}/{b.total} | "
                   f"in_retry={b.failed_in_retry} | dead={b.dead_lettered} | terminal={b.terminal}")


@cli.command()
@click.argument("batch_id")
@click.option("--state", default=None, help="Filter jobs by state (pending, processing, completed, dead, cancelled)")
@click.pass_context
def jobs(ctx, batch_id, state):
    """List the jobs of a batch"""
    rows = SQLiteQueue(_storage(ctx)).list_jobs(batch_id=batch_id, state=state)
    if not rows:
        click.echo("No jobs found.")
        return
    for job in rows:
        click.echo(f"{job.id} | [{job.chunk_start}, {job.chunk_end}) | state={job.state} | "
                   f"attempt={job.attempt}/{job.max_attempts} | deliveries={job.deliveries}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    try:
        job = SQLiteQueue(_storage(ctx)).get_job(job_id)
    except JobNotFoundError:
        click.echo(f"❌ Job {job_id} not found.")
        return
    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Batch: {job.batch_id}")
    click.echo(f"  Range: [{job.chunk_start}, {job.chunk_end})")
    click.echo(f"  State: {job.state}")
    click.echo(f"  Attempt: {job.attempt}/{job.max_attempts}")
    click.echo(f"  Deliveries: {job.deliveries}")
    click.echo(f"  Worker: {job.worker_id or '-'}")
    click.echo(f"  Lease until: {job.lease_until or '-'}")
    click.echo(f"  Available at: {job.available_at or '-'}")
    click.echo(f"  Created: {job.created_at}")
    click.echo(f"  Updated: {job.updated_at}")
    click.echo(f"  Error: {job.last_error or '-'}")


@cli.command()
@click.argument("batch_id")
@click.option("--interval", default=2.0, show_default=True, help="Seconds between polls")
@click.option("--timeout", default=None, type=float, help="Give up after this many seconds")
@click.pass_context
def wait(ctx, batch_id, interval, timeout):
    """Poll a batch until it is terminal or cancelled"""
    service = _service(ctx)
    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        try:
            batch_status = service.get_batch_status(batch_id)
        except BatchNotFoundError as e:
            raise click.ClickException(str(e))
        if batch_status.terminal or batch_status.cancelled:
            _echo_status(batch_status)
            return
        if deadline is not None and time.monotonic() >= deadline:
            _echo_status(batch_status)
            raise click.ClickException(f"batch {batch_id} not finished after {timeout}s")
        time.sleep(interval)


@cli.command()
@click.argument("batch_id")
@click.pass_context
def cancel(ctx, batch_id):
    """Cancel a batch; workers stop starting its jobs"""
    try:
        cancelled = _service(ctx).cancel_batch(batch_id)
    except BatchNotFoundError as e:
        raise click.ClickException(str(e))
    if cancelled:
        click.echo(f"🛑 Batch {batch_id} cancelled.")
    else:
        click.echo(f"Batch {batch_id} already finished, nothing to cancel.")


# ---------------- Dead Letter Queue ----------------
@cli.group()
def dlq():
    """Dead Letter Queue operations"""
    pass


@dlq.command("list")
@click.option("--batch", "batch_id", default=None, help="Only entries of this batch")
@click.option("--all", "include_replayed", is_flag=True, help="Include entries already replayed")
@click.pass_context
def dlq_list(ctx, batch_id, include_replayed):
    """List jobs in DLQ"""
    entries = _service(ctx).list_dead_letters(batch_id=batch_id, include_replayed=include_replayed)
    if not entries:
        click.echo("No jobs in DLQ.")
        return
    for e in entries:
        replayed = f" | replayed_at={e.replayed_at}" if e.replayed_at else ""
        click.echo(f"{e.job_id} | batch={e.batch_id} | attempts={e.attempts_made} | "
                   f"at={e.dead_lettered_at} | error={e.last_error}{replayed}")


@dlq.command("replay")
@click.argument("job_id")
@click.pass_context
def dlq_replay(ctx, job_id):
    """Requeue a DLQ job with its attempt count reset"""
    try:
        _service(ctx).requeue_dead_letter(job_id)
    except JobNotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(f"♻️ Job {job_id} moved back to pending.")


# ---------------- Advisory feedback ----------------
@cli.command()
@click.option("--chunk-size", default=None, type=int, help="Chunk size you plan to use (uses config if set)")
@click.pass_context
def advise(ctx, chunk_size):
    """Recommend a chunk size from observed queue latency"""
    db = _storage(ctx)
    try:
        settings = load_settings(db)
        advisor = ChunkSizeAdvisor(db, threshold_seconds=settings.latency_threshold)
        advice = advisor.recommend(chunk_size or settings.chunk_size)
    except BatchError as e:
        raise click.ClickException(str(e))
    mean = f"{advice.mean_latency:.3f}s" if advice.mean_latency is not None else "N/A"
    click.echo("📈 Chunk size advice")
    click.echo(f"  Current: {advice.current_chunk_size}")
    click.echo(f"  Recommended: {advice.recommended_chunk_size}")
    click.echo(f"  Mean latency: {mean} over {advice.samples} samples")
    click.echo(f"  Reason: {advice.reason}")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers and defaults"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    db = _storage(ctx)
    previous = db.get_config(key)
    db.set_config(key, value)
    try:
        load_settings(db)
    except InvalidConfigError as e:
        if previous is None:
            db.delete_config(key)
        else:
            db.set_config(key, previous)
        raise click.ClickException(f"rejected: {e}")
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    row = _storage(ctx).query_one("SELECT value, updated_at FROM config WHERE key=?", (key,))
    if not row:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={row['value']} (updated_at={row['updated_at']})")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = _storage(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""
    pass


@rescue.command("leases")
@click.option("--older-than-seconds", default=60, help="Only leases that expired at least N seconds ago")
@click.pass_context
def rescue_leases(ctx, older_than_seconds):
    """Clear expired leases and return jobs to pending"""
    ids = SQLiteQueue(_storage(ctx)).release_expired(older_than_seconds)
    if not ids:
        click.echo("No expired leases found.")
        return
    click.echo(f"🔧 Cleared leases and returned {len(ids)} job(s) to pending: {', '.join(ids)}")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
