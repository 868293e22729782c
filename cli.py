# cli.py
import json

import click

from config import CONFIG_KEYS, db_path_from_env, load_settings
from lanes import PriorityLanes
from logs import configure_logging
from models import MAX_PRIORITY, MIN_PRIORITY, Job, JobStatus, JobType
from promotion import DelayPromoter
from recovery import RecoveryCoordinator
from storage import Storage


@click.group()
@click.option("--db", "db_path", default=None, help="SQLite database path (default: $PCBQUEUE_DB or queue.db)")
@click.option("--log-level", default="INFO", show_default=True, help="Logging level")
@click.pass_context
def cli(ctx, db_path, log_level):
    """pcbqueue - preemptive priority job scheduler"""
    configure_logging(log_level)
    ctx.obj = {"db_path": db_path or db_path_from_env()}


def _storage(ctx) -> Storage:
    return Storage(ctx.obj["db_path"])


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--type", "job_type", required=True, type=click.Choice([t.value for t in JobType], case_sensitive=False),
              help="Job type")
@click.option("--payload", default="{}", help="Payload as a JSON object")
@click.option("--priority", default=5, type=click.IntRange(MIN_PRIORITY, MAX_PRIORITY), show_default=True,
              help="Priority, 10 runs first")
@click.option("--delay", "delay_secs", default=0.0, type=click.FloatRange(min=0), help="Seconds before the job becomes ready")
@click.option("--execution-time", default=10.0, type=click.FloatRange(min=0), show_default=True,
              help="Seconds of work the job needs once running")
@click.option("--max-retries", default=None, type=int, help="Maximum retries (overrides default_max_retries config if set)")
@click.pass_context
def enqueue(ctx, job_type, payload, priority, delay_secs, execution_time, max_retries):
    """Create a new PENDING job"""
    db = _storage(ctx)
    try:
        payload = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON ({e})", param_hint="--payload")
    if not isinstance(payload, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")

    # fall back to config default if not provided
    if max_retries is None:
        max_retries = load_settings(db).default_max_retries

    job = db.create_job(Job(
        type=job_type.upper(),
        payload=payload,
        priority=priority,
        max_retries=max_retries,
        execution_time_secs=execution_time,
        delay_ms=int(delay_secs * 1000),
    ))
    click.echo(f"✅ Job {job.id} enqueued (type={job.type}, priority={priority}, delay={delay_secs}s, "
               f"execution={execution_time}s).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", default=None, type=click.Choice([s.value for s in JobStatus], case_sensitive=False),
              help="Filter jobs by status")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def list_jobs(ctx, status, limit):
    """List recent jobs, newest first"""
    db = _storage(ctx)
    jobs = db.list_recent_jobs(limit=limit, status=status.upper() if status else None)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        click.echo(f"{job.id} | {job.type} | status={job.status} | priority={job.priority} | "
                   f"retries={job.retry_count}/{job.max_retries} | created={job.created_at}")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show job counts, lane lengths and waiting delayed jobs"""
    db = _storage(ctx)
    stats = RecoveryCoordinator(db).recovery_stats()
    click.echo("📊 Job Status Summary:")
    for key, count in stats.items():
        click.echo(f"  {key}: {count}")

    lengths = {p: n for p, n in PriorityLanes(db).lane_lengths().items() if n}
    click.echo("🚦 Lanes: " + (", ".join(f"{p}={n}" for p, n in lengths.items()) if lengths else "all empty"))

    waiting = DelayPromoter(db).delayed_summary()
    if waiting:
        click.echo("⏳ Pending:")
        for w in waiting:
            click.echo(f"  {w['id']}: priority {w['priority']}, ready in {w['ready_in_secs']}s")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job and its execution state"""
    db = _storage(ctx)
    job = db.get_job(job_id)
    if not job:
        click.echo(f"❌ Job {job_id} not found.")
        ctx.exit(1)

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Type: {job.type}")
    click.echo(f"  Payload: {json.dumps(job.payload)}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Retries: {job.retry_count}/{job.max_retries}")
    click.echo(f"  Delay: {job.delay_ms}ms")
    click.echo(f"  Next retry: {job.next_run_at or '-'}")
    click.echo(f"  Created: {job.created_at}")
    click.echo(f"  Started: {job.started_at or '-'}")
    click.echo(f"  Finished: {job.finished_at or '-'}")
    click.echo(f"  Last error: {job.last_error or '-'}")

    pcb = db.get_pcb(job.id)
    if pcb:
        click.echo("  Execution state:")
        click.echo(f"    Status: {pcb.status}")
        click.echo(f"    Work: {pcb.execution_time_done_secs}/{pcb.execution_time_secs}s")
        if pcb.total_delay_ms:
            click.echo(f"    Delay: {pcb.delayed_so_far_ms}/{pcb.total_delay_ms}ms")
        click.echo(f"    Resumes: {pcb.resume_count}")
        click.echo(f"    Suspended at: {pcb.suspended_at or '-'}")


# ---------------- Worker ----------------
@cli.command()
@click.option("--count", default=1, help="Number of workers to start")
@click.option("--timeout-seconds", default=None, type=float, help="Execution-phase ceiling per job (uses config if set)")
@click.option("--backoff-base", default=None, type=int, help="Exponential backoff base for retries (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.pass_context
def worker(ctx, count, timeout_seconds, backoff_base, poll_interval):
    """Run recovery, then start workers and background loops"""
    from scheduler import Scheduler

    settings = load_settings(_storage(ctx), job_timeout_secs=timeout_seconds,
                             backoff_base=backoff_base, poll_interval=poll_interval)
    sched = Scheduler(settings, workers=count)
    click.echo(f"🚀 Starting {count} worker(s) (timeout={settings.job_timeout_secs}s, "
               f"backoff_base={settings.backoff_base}, poll={settings.poll_interval}s)")
    sched.start()
    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        sched.wait()
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
    finally:
        sched.stop()
        click.echo("✅ Workers stopped cleanly.")


@cli.command()
@click.pass_context
def recover(ctx):
    """Run crash recovery once and exit"""
    report = RecoveryCoordinator(_storage(ctx)).recover()
    click.echo(f"🔧 Re-queued {len(report.requeued)} job(s): pending={len(report.pending)}, "
               f"running={len(report.running)}, suspended={len(report.suspended)}")


# ---------------- Dead Letter Queue ----------------
@cli.group()
def dlq():
    """Permanently failed jobs"""
    pass


@dlq.command("list")
@click.pass_context
def dlq_list(ctx):
    """List FAILED jobs"""
    jobs = _storage(ctx).find_jobs_by_status(JobStatus.FAILED)
    if not jobs:
        click.echo("No jobs in DLQ.")
        return
    for job in jobs:
        click.echo(f"{job.id} | {job.type} | retries={job.retry_count} | priority={job.priority} | error={job.last_error}")


@dlq.command("retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry(ctx, job_id):
    """Reset a FAILED job to PENDING with a fresh retry budget"""
    db = _storage(ctx)
    if not db.transition(job_id, JobStatus.FAILED, JobStatus.PENDING, retry_count=0, last_error=None,
                         next_run_at=None, finished_at=None):
        click.echo(f"❌ Job {job_id} is not in the DLQ.")
        ctx.exit(1)
    click.echo(f"♻️ Job {job_id} moved back to pending.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers and defaults"""
    pass


@config.command("set")
@click.argument("key", type=click.Choice(CONFIG_KEYS))
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    db = _storage(ctx)
    try:
        load_settings(db, **{key: value})
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="value")
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key", type=click.Choice(CONFIG_KEYS))
@click.pass_context
def config_get(ctx, key):
    """Get a config key (effective value)"""
    db = _storage(ctx)
    stored = db.get_config(key)
    value = getattr(load_settings(db), key)
    click.echo(f"{key}={value}" + ("" if stored is not None else " (default)"))


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys set in the database"""
    rows = _storage(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
