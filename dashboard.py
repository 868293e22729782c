# dashboard.py
from html import escape

from fastapi import Depends, FastAPI
from fastapi.responses import HTMLResponse, JSONResponse

from config import db_path_from_env
from lanes import PriorityLanes
from storage import Storage

app = FastAPI()


def get_db():
    db = Storage(db_path_from_env())
    try:
        yield db
    finally:
        db.close()


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
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(160px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Home</a>
        <a href="/metrics/json">📈 Metrics</a>
        <a href="/jobs">🧾 JSON</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _job_json(job):
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "priority": job.priority,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "execution_time_secs": job.execution_time_secs,
        "delay_ms": job.delay_ms,
        "last_error": job.last_error,
        "created_at": job.created_at,
    }


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(db: Storage = Depends(get_db)):
    jobs = db.list_recent_jobs(limit=50)
    counts = db.count_by_status()

    cards = "".join(f'<div class="card"><b>{escape(s)}</b><p>{n}</p></div>' for s, n in counts.items())
    table_html = f"""
    <div class="cards">{cards}</div>
    <h2>Recent jobs</h2>
    <table>
      <tr><th>ID</th><th>Type</th><th>Status</th><th>Priority</th><th>Retries</th><th>Created</th></tr>
    """
    for j in jobs:
        table_html += (f"<tr><td><a href='/job/{escape(j.id)}'>{escape(j.id)}</a></td>"
                       f"<td>{escape(j.type)}</td><td>{escape(j.status)}</td>"
                       f"<td>{j.priority}</td><td>{j.retry_count}/{j.max_retries}</td><td>{j.created_at}</td></tr>")
    table_html += "</table>"
    if not jobs:
        table_html += "<p class='muted'>No jobs yet.</p>"
    return page("📊 Scheduler Dashboard", table_html)


@app.get("/jobs", response_class=JSONResponse)
def jobs_json(limit: int = 50, db: Storage = Depends(get_db)):
    return [_job_json(j) for j in db.list_recent_jobs(limit=limit)]


# ---------- Metrics (JSON) ----------
@app.get("/metrics/json", response_class=JSONResponse)
def metrics_json(db: Storage = Depends(get_db)):
    lanes = PriorityLanes(db).lane_lengths()
    return {
        "jobs": db.count_by_status(),
        "lanes": {str(p): n for p, n in lanes.items()},
        "suspended_pcbs": db.count_pcbs_by_status("SUSPENDED"),
    }


# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: str, db: Storage = Depends(get_db)):
    job = db.get_job(job_id)
    if not job:
        return HTMLResponse(page("❌ Job not found", f"<p>Job {escape(job_id)} not found.</p>"), status_code=404)

    pcb = db.get_pcb(job.id)
    pcb_html = "<p class='muted'>Not started yet.</p>"
    if pcb:
        pcb_html = f"""
      <table>
        <tr><th>Status</th><td>{escape(pcb.status)}</td></tr>
        <tr><th>Work done</th><td>{pcb.execution_time_done_secs}/{pcb.execution_time_secs}s</td></tr>
        <tr><th>Delay done</th><td>{pcb.delayed_so_far_ms}/{pcb.total_delay_ms}ms</td></tr>
        <tr><th>Resumes</th><td>{pcb.resume_count}</td></tr>
        <tr><th>Suspended at</th><td>{pcb.suspended_at or '-'}</td></tr>
        <tr><th>Deadline</th><td>{pcb.deadline_time or '-'}</td></tr>
      </table>
        """

    body = f"""
      <h2>Job {escape(job.id)}</h2>
      <div class="cards">
        <div class="card"><b>Status</b><p>{escape(job.status)}</p></div>
        <div class="card"><b>Type</b><p>{escape(job.type)}</p></div>
        <div class="card"><b>Priority</b><p>{job.priority}</p></div>
        <div class="card"><b>Retries</b><p>{job.retry_count}/{job.max_retries}</p></div>
      </div>

      <h3>Timestamps</h3>
      <table>
        <tr><th>Created</th><td>{job.created_at}</td></tr>
        <tr><th>Started</th><td>{job.started_at or '-'}</td></tr>
        <tr><th>Finished</th><td>{job.finished_at or '-'}</td></tr>
        <tr><th>Next retry</th><td>{job.next_run_at or '-'}</td></tr>
      </table>

      <h3>Execution state</h3>
      {pcb_html}

      <h3>Error</h3>
      <pre>{escape(job.last_error or '-')}</pre>
    """
    return page(f"🔎 Job {escape(job.id)} Detail", body)
