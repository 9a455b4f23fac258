from rq import get_current_job
from secure_mcq.core.database import SessionLocal
from secure_mcq.services.sessions import sweep_expired_sessions


def sweep_job() -> dict:
    job = get_current_job()
    if job is not None:
        job.meta.update({"state": "running"}); job.save_meta()
    db = SessionLocal()
    try:
        finalized = sweep_expired_sessions(db)
    finally:
        db.close()
    if job is not None:
        job.meta.update({"state": "done", "finalized": len(finalized)}); job.save_meta()
    return {"finalized": finalized}
