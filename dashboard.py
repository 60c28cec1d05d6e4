# dashboard.py
from html import escape
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse

from batches import BatchService
from errors import BatchNotFoundError, InvalidConfigError, JobNotFoundError
from models import DEAD
from storage import Storage

app = FastAPI(title="batchctl status API")


def get_service():
    db = Storage()
    try:
        yield BatchService(db)
    finally:
        db.close()


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
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
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(service: BatchService = Depends(get_service)):
    rows = service.list_batches()
    body = """
      <table>
        <tr><th>Batch</th><th>State</th><th>Succeeded</th><th>In retry</th><th>Dead</th><th>Terminal</th></tr>
    """
    for b in rows:
        body += (f"<tr><td><a href='/batches/{escape(b.batch_id)}'>{escape(b.batch_id)}</a></td>"
                 f"<td>{b.state}</td><td>{b.succeeded}/{b.total}</td><td>{b.failed_in_retry}</td>"
                 f"<td>{b.dead_lettered}</td><td>{'yes' if b.terminal else 'no'}</td></tr>")
    body += "</table>"
    if not rows:
        body += "<p class='muted'>No batches yet.</p>"
    return page("📊 Batches", body)


# ---------- Batches ----------
@app.get("/batches")
def list_batches(state: Optional[str] = None, limit: int = 50, service: BatchService = Depends(get_service)):
    return [b.as_dict() for b in service.list_batches(state=state, limit=limit)]


@app.get("/batches/{batch_id}")
def batch_status(batch_id: str, service: BatchService = Depends(get_service)):
    try:
        return service.get_batch_status(batch_id).as_dict()
    except BatchNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/batches/{batch_id}/jobs")
def batch_jobs(batch_id: str, state: Optional[str] = None, service: BatchService = Depends(get_service)):
    try:
        service.get_manifest(batch_id)
    except BatchNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [
        {
            "job_id": j.id,
            "chunk_start": j.chunk_start,
            "chunk_end": j.chunk_end,
            "state": j.state,
            "attempt": j.attempt,
            "max_attempts": j.max_attempts,
            "deliveries": j.deliveries,
            "last_error": j.last_error,
        }
        for j in service.queue.list_jobs(batch_id=batch_id, state=state)
    ]


@app.post("/batches/{batch_id}/cancel")
def cancel_batch(batch_id: str, service: BatchService = Depends(get_service)):
    try:
        cancelled = service.cancel_batch(batch_id)
    except BatchNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"batch_id": batch_id, "cancelled": cancelled}


# ---------- DLQ ----------
@app.get("/dlq")
def dlq(batch_id: Optional[str] = None, include_replayed: bool = False,
        service: BatchService = Depends(get_service)):
    return [
        {
            "job_id": e.job_id,
            "batch_id": e.batch_id,
            "last_error": e.last_error,
            "attempts_made": e.attempts_made,
            "dead_lettered_at": e.dead_lettered_at,
            "replayed_at": e.replayed_at,
        }
        for e in service.list_dead_letters(batch_id=batch_id, include_replayed=include_replayed)
    ]


@app.post("/dlq/{job_id}/replay")
def replay(job_id: str, service: BatchService = Depends(get_service)):
    try:
        job = service.queue.get_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if job.state != DEAD:
        raise HTTPException(status_code=409, detail=f"job {job_id} is {job.state}, not dead-lettered")
    service.requeue_dead_letter(job_id)
    return {"job_id": job_id, "requeued": True}


# ---------- Advisory feedback ----------
@app.get("/advice")
def advice(chunk_size: Optional[int] = None, service: BatchService = Depends(get_service)):
    try:
        size = chunk_size if chunk_size is not None else service.settings.chunk_size
        return service.advisor.recommend(size).as_dict()
    except InvalidConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
