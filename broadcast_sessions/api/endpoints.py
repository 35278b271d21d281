"""
API Endpoints - FastAPI endpoints for broadcast sessions, the finalize job and settings
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
import logging

from broadcast_sessions.automation.finalize_sessions import FinalizeSessionsJob
from broadcast_sessions.database.models import BroadcastSession, SessionStatus, as_utc
from broadcast_sessions.database.session import get_session
from broadcast_sessions.database.settings_store import SettingsStore
from broadcast_sessions.processing.rebuild import SessionRebuilder
from broadcast_sessions.processing.rollups import RollupAggregator
from broadcast_sessions.processing.session_stitcher import SessionStitcher
from broadcast_sessions.services.summarizer import SummaryError
from broadcast_sessions.utils.errors import SessionNotFoundError

logger = logging.getLogger(__name__)


# Request/Response models
class SessionUpdateRequest(BaseModel):
    notes: Optional[str] = None
    tags: Optional[List[str]] = None


class RebuildRequest(BaseModel):
    from_date: Optional[datetime] = None


class JobConfigRequest(BaseModel):
    interval_minutes: Optional[float] = None
    enabled: Optional[bool] = None
    generate_ai_summary: Optional[bool] = None
    batch_size: Optional[int] = None
    stale_generating_minutes: Optional[float] = None


class SettingUpdateRequest(BaseModel):
    value: Any = None
    description: Optional[str] = None


class SummaryResponse(BaseModel):
    session_id: int
    summary: str
    tokens_used: int


def create_api(
    session_factory: Optional[Callable] = None,
    job: Optional[FinalizeSessionsJob] = None,
    config: Optional[Dict[str, Any]] = None,
    app: Optional[FastAPI] = None,
) -> FastAPI:
    """Create FastAPI app with session, job and settings endpoints"""
    session_factory = session_factory or get_session
    job = job or FinalizeSessionsJob(session_factory=session_factory, config=config)

    if app is None:
        app = FastAPI(
            title="Broadcast Sessions API",
            description="Broadcast session reconstruction, rollups and finalization",
            version="0.1.0",
        )

    def _session_detail(record: BroadcastSession) -> Dict[str, Any]:
        data = record.to_dict()
        data['segments'] = [segment.to_dict() for segment in record.segments]
        return data

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @app.get("/api/sessions")
    async def list_sessions(
        limit: int = 50,
        offset: int = 0,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        """List sessions newest first"""
        try:
            status_filter = SessionStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        if limit < 1 or limit > 500 or offset < 0:
            raise HTTPException(status_code=400, detail="limit must be 1-500 and offset non-negative")

        try:
            with session_factory() as session:
                sessions, total = SessionStitcher(session, config=config).list_sessions(
                    limit=limit,
                    offset=offset,
                    status=status_filter,
                    start_date=as_utc(start_date),
                    end_date=as_utc(end_date),
                )
                return {
                    'sessions': [record.to_dict() for record in sessions],
                    'total': total,
                    'limit': limit,
                    'offset': offset,
                }
        except Exception as e:
            logger.error(f"Error listing sessions: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/sessions/stats")
    async def session_stats(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None):
        """Aggregate statistics across sessions"""
        try:
            with session_factory() as session:
                return RollupAggregator(session).get_aggregate_stats(as_utc(start_date), as_utc(end_date))
        except Exception as e:
            logger.error(f"Error computing session stats: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/sessions/rebuild")
    async def rebuild_sessions(request: Optional[RebuildRequest] = None):
        """Rebuild every segment and session from the event log"""
        from_date = as_utc(request.from_date) if request else None
        logger.info(f"Starting session rebuild{f' from {from_date.isoformat()}' if from_date else ''}")
        try:
            with session_factory() as session:
                try:
                    result = SessionRebuilder(session, config).rebuild(from_date)
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
            return {'status': 'success', **result.to_dict()}
        except Exception as e:
            logger.error(f"Error rebuilding sessions: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to rebuild sessions")

    @app.post("/api/sessions/process-new-events")
    async def process_new_events():
        """Fold newly ingested events into segments and live sessions"""
        try:
            with session_factory() as session:
                try:
                    result = SessionRebuilder(session, config).process_new_events()
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
            return {'status': 'success', **result.to_dict()}
        except Exception as e:
            logger.error(f"Error processing new events: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to process new events")

    @app.get("/api/sessions/{session_id}")
    async def get_session_detail(session_id: int):
        """Get one session with its segments"""
        with session_factory() as session:
            record = session.get(BroadcastSession, session_id)
            if record is None:
                raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
            return _session_detail(record)

    @app.put("/api/sessions/{session_id}")
    async def update_session(session_id: int, request: SessionUpdateRequest):
        """Update operator notes and tags"""
        updates = request.model_dump(exclude_unset=True)
        with session_factory() as session:
            record = session.get(BroadcastSession, session_id)
            if record is None:
                raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
            if 'notes' in updates:
                record.notes = updates['notes']
            if 'tags' in updates:
                record.tags = list(updates['tags'] or [])
            session.commit()
            return record.to_dict()

    @app.post("/api/sessions/{session_id}/recompute")
    async def recompute_session(session_id: int):
        """Recompute rollups for a session"""
        try:
            with session_factory() as session:
                rollups = RollupAggregator(session).compute_and_update_session(session_id)
                session.commit()
            return {'session_id': session_id, 'rollups': rollups.to_dict()}
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.error(f"Error recomputing session {session_id}: {str(e)}")
            raise HTTPException(status_code=500, detail="Failed to recompute session rollups")

    @app.post("/api/sessions/{session_id}/summary", response_model=SummaryResponse)
    async def generate_session_summary(session_id: int):
        """Generate or regenerate the AI summary for a session"""
        if job.summarizer is None or not job.summarizer.is_available():
            raise HTTPException(status_code=503, detail="AI summary service is not configured")
        try:
            result = await job.generate_summary(session_id)
            return SummaryResponse(
                session_id=session_id,
                summary=result.summary_text,
                tokens_used=result.tokens_used,
            )
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SummaryError as e:
            logger.error(f"Error generating session summary for {session_id}: {str(e)}")
            raise HTTPException(status_code=500, detail="Failed to generate session summary")

    # ------------------------------------------------------------------
    # Finalize job
    # ------------------------------------------------------------------

    @app.get("/api/jobs/finalize-sessions/status")
    async def finalize_job_status():
        return job.get_status()

    @app.post("/api/jobs/finalize-sessions/start")
    async def finalize_job_start():
        await job.start()
        return job.get_status()

    @app.post("/api/jobs/finalize-sessions/pause")
    async def finalize_job_pause():
        await job.pause()
        return job.get_status()

    @app.post("/api/jobs/finalize-sessions/resume")
    async def finalize_job_resume():
        await job.resume()
        return job.get_status()

    @app.post("/api/jobs/finalize-sessions/stop")
    async def finalize_job_stop():
        await job.stop()
        return job.get_status()

    @app.put("/api/jobs/finalize-sessions/config")
    async def finalize_job_config(request: JobConfigRequest):
        try:
            await job.update_config(request.model_dump(exclude_none=True))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return job.get_status()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @app.get("/api/settings/{key}")
    async def get_setting(key: str):
        with session_factory() as session:
            store = SettingsStore(session, config)
            row = store.get(key)
            if row is None and key not in store.defaults:
                raise HTTPException(status_code=404, detail=f"Setting {key} not found")
            return {
                'key': key,
                'value': store.get_with_default(key),
                'description': row.description if row is not None else None,
                'is_default': row is None,
            }

    @app.put("/api/settings/{key}")
    async def put_setting(key: str, request: SettingUpdateRequest):
        with session_factory() as session:
            store = SettingsStore(session, config)
            try:
                row = store.set(key, request.value, request.description)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            session.commit()
            return {'key': row.key, 'value': row.value, 'description': row.description, 'is_default': False}

    return app
