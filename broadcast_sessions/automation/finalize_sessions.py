"""
Finalize Sessions Job

Background job that advances ended sessions to ``finalized``:

1. Find sessions in ``pending_finalize`` whose finalize_at has passed
2. Mark them finalized (committed before anything else)
3. Recompute final rollups
4. Request an AI summary of the chat transcript (if enabled)

Running/paused flags, config and counters are persisted in ``job_state`` so a
restart resumes the same schedule.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from broadcast_sessions.database.event_store import EventStore
from broadcast_sessions.database.job_state import JobStateStore
from broadcast_sessions.database.models import (
    BroadcastSession,
    SessionStatus,
    SummaryStatus,
    utcnow,
)
from broadcast_sessions.database.session import get_session
from broadcast_sessions.processing.rollups import RollupAggregator
from broadcast_sessions.services.summarizer import SummaryError, SummaryResult, build_transcript
from broadcast_sessions.utils.config import get_finalize_job_config, get_summaries_config
from broadcast_sessions.utils.errors import SessionNotFoundError

logger = logging.getLogger(__name__)

JOB_NAME = 'finalize-sessions'

CONFIG_KEYS = ('interval_minutes', 'enabled', 'generate_ai_summary', 'batch_size', 'stale_generating_minutes')


def _empty_stats() -> Dict[str, Any]:
    return {
        'last_run': None,
        'total_runs': 0,
        'total_finalized': 0,
        'total_summaries_generated': 0,
        'last_run_finalized': 0,
        'last_run_summaries': 0,
    }


def validate_job_config(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Check a partial job config, raising ValueError on unknown keys or bad values."""
    unknown = set(partial) - set(CONFIG_KEYS)
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")
    for key in ('enabled', 'generate_ai_summary'):
        if key in partial and not isinstance(partial[key], bool):
            raise ValueError(f"{key} must be a boolean")
    for key in ('interval_minutes', 'batch_size', 'stale_generating_minutes'):
        if key in partial:
            value = partial[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"{key} must be a positive number")
    if 'batch_size' in partial:
        partial = {**partial, 'batch_size': int(partial['batch_size'])}
    return partial


class FinalizeSessionsJob:
    """
    Periodic finalizer with an operator contract.

    Features:
    - start/pause/resume/stop with persisted running state
    - single-flight ticks (a tick that finds one in progress returns)
    - per-session error isolation
    - recovery of summaries stuck in ``generating`` after a crash
    """

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        summarizer=None,
        job_state: Optional[JobStateStore] = None,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory or get_session
        self.summarizer = summarizer
        self.job_state = job_state or JobStateStore(self.session_factory)
        self.clock = clock

        defaults = get_finalize_job_config(config)
        self.config: Dict[str, Any] = {
            'interval_minutes': defaults.get('interval_minutes', 1),
            'enabled': defaults.get('enabled', True),
            'generate_ai_summary': defaults.get('generate_ai_summary', True),
            'batch_size': defaults.get('batch_size', 10),
            'stale_generating_minutes': defaults.get('stale_generating_minutes', 30),
        }
        self.max_chat_messages = int(get_summaries_config(config).get('max_chat_messages', 1000))
        self.stats = _empty_stats()

        # State
        self.is_running = False
        self.is_paused = False
        self.is_processing = False
        self._timer_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self):
        """Create the job_state row with the current config if it does not exist."""
        self.job_state.ensure_job_state(JOB_NAME, self.config)

    async def restore(self) -> bool:
        """Reload config, stats and flags, and re-enter the persisted state."""
        state = self.job_state.load_state(JOB_NAME)
        if not state:
            logger.info("No persisted state found for finalize-sessions job")
            await self.init()
            return False

        self.config.update({k: v for k, v in (state.get('config') or {}).items() if k in CONFIG_KEYS})
        self.stats.update(state.get('stats') or {})
        self.recover_stale_summaries()

        if state['is_running'] and not self.config['enabled']:
            logger.warning("Finalize sessions job was running but is disabled, recording it as stopped")
            self.job_state.save_running_state(JOB_NAME, False, False)
            return False
        if state['is_running'] and not state['is_paused']:
            logger.info("Restoring finalize-sessions job to running state")
            await self.start()
            return True
        if state['is_running'] and state['is_paused']:
            logger.info("Restoring finalize-sessions job to paused state")
            self.is_running = True
            self.is_paused = True
            self._arm_timer()
            return True
        return False

    async def start(self):
        if self.is_running and not self.is_paused:
            logger.warning("Finalize sessions job is already running")
            return
        if not self.config['enabled']:
            logger.warning("Finalize sessions job is disabled")
            return

        logger.info(
            f"Starting finalize sessions job (interval={self.config['interval_minutes']}m, "
            f"ai_summary={self.config['generate_ai_summary']})"
        )
        self.job_state.ensure_job_state(JOB_NAME, self.config)

        self.is_running = True
        self.is_paused = False
        self.job_state.save_running_state(JOB_NAME, True, False)

        # Run immediately on start
        await self.run_finalize()
        self._arm_timer()

    async def pause(self):
        if not self.is_running:
            logger.warning("Finalize sessions job is not running")
            return
        self.is_paused = True
        self.job_state.save_running_state(JOB_NAME, True, True)
        logger.info("Finalize sessions job paused")

    async def resume(self):
        if not self.is_running:
            logger.warning("Finalize sessions job is not running")
            return
        self.is_paused = False
        self.job_state.save_running_state(JOB_NAME, True, False)
        logger.info("Finalize sessions job resumed")

    async def stop(self):
        """Stop between ticks: a tick already running finishes first."""
        await self._cancel_timer()
        self.is_running = False
        self.is_paused = False
        self.job_state.save_running_state(JOB_NAME, False, False)
        logger.info("Finalize sessions job stopped")

    async def halt(self):
        """Cancel the timer without touching persisted state (process shutdown)."""
        await self._cancel_timer()
        logger.info("Finalize sessions job halted (state preserved)")

    async def update_config(self, partial: Dict[str, Any]):
        partial = validate_job_config(dict(partial))
        was_running = self.is_running and not self.is_paused

        if was_running:
            await self.stop()

        self.config.update(partial)
        self.job_state.save_config(JOB_NAME, self.config)
        logger.info(f"Finalize sessions job config updated: {self.config}")

        if was_running and self.config['enabled']:
            await self.start()

    def get_status(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'is_paused': self.is_paused,
            'is_processing': self.is_processing,
            'config': dict(self.config),
            'stats': dict(self.stats),
        }

    def reset_stats(self):
        self.stats = _empty_stats()
        self.job_state.save_stats(JOB_NAME, self.stats)
        logger.info("Finalize sessions job stats reset")

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _arm_timer(self):
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = asyncio.create_task(self._timer_loop())

    async def _cancel_timer(self):
        """Cancel the timer, then wait for a tick already in flight to finish."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._tick_task is not None and not self._tick_task.done():
            logger.info("Waiting for the running finalize tick to complete")
            await self._tick_task
        self._tick_task = None

    async def _timer_loop(self):
        """Fire every interval; paused ticks are skipped while the timer keeps running.

        Each tick runs in its own task behind ``asyncio.shield`` so cancelling
        the timer never interrupts a tick midway.
        """
        while True:
            try:
                await asyncio.sleep(float(self.config['interval_minutes']) * 60)
                if not self.is_paused:
                    self._tick_task = asyncio.create_task(self.run_finalize())
                    await asyncio.shield(self._tick_task)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in finalize timer loop: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _due_session_ids(self) -> List[int]:
        with self.session_factory() as session:
            rows = session.query(BroadcastSession.id).filter(
                BroadcastSession.status == SessionStatus.PENDING_FINALIZE.value,
                BroadcastSession.finalize_at.isnot(None),
                BroadcastSession.finalize_at <= self.clock(),
            ).order_by(BroadcastSession.finalize_at, BroadcastSession.id).limit(
                int(self.config['batch_size'])
            ).all()
            return [row.id for row in rows]

    async def run_finalize(self):
        """Run a single finalization cycle."""
        if self.is_processing:
            logger.debug("Finalize sessions job is already processing")
            return

        self.is_processing = True
        self.stats['last_run_finalized'] = 0
        self.stats['last_run_summaries'] = 0
        try:
            self.recover_stale_summaries()
            session_ids = self._due_session_ids()
            if session_ids:
                logger.info(f"Found {len(session_ids)} sessions to finalize")
            else:
                logger.debug("No sessions to finalize")

            for session_id in session_ids:
                await self._finalize_session(session_id)

            logger.info(
                f"Finalize sessions cycle completed: finalized={self.stats['last_run_finalized']}, "
                f"summaries={self.stats['last_run_summaries']}"
            )
        except Exception as e:
            logger.error(f"Error in finalize sessions cycle: {e}", exc_info=True)
        finally:
            self.stats['last_run'] = self.clock().isoformat()
            self.stats['total_runs'] += 1
            self.is_processing = False
            try:
                self.job_state.save_stats(JOB_NAME, self.stats)
            except Exception as e:
                logger.error(f"Failed to persist finalize job stats: {e}", exc_info=True)

    async def _finalize_session(self, session_id: int):
        logger.info(f"Finalizing session {session_id}")
        try:
            with self.session_factory() as session:
                record = session.get(BroadcastSession, session_id)
                if record is None:
                    raise SessionNotFoundError(session_id)
                record.status = SessionStatus.FINALIZED.value
                session.commit()

                rollups = RollupAggregator(session).compute_and_update_session(session_id)
                session.commit()
                summary_status = record.ai_summary_status

            logger.info(
                f"Session {session_id} rollups computed: tokens={rollups.total_tokens}, "
                f"followers={rollups.followers_gained}, peak={rollups.peak_viewers}"
            )
            self.stats['last_run_finalized'] += 1
            self.stats['total_finalized'] += 1

            if (
                self.config['generate_ai_summary']
                and self.summarizer is not None
                and self.summarizer.is_available()
                and summary_status == SummaryStatus.PENDING.value
            ):
                await self._generate_summary(session_id)
        except Exception as e:
            logger.error(f"Error finalizing session {session_id}: {e}", exc_info=True)

    async def _generate_summary(self, session_id: int) -> Optional[SummaryResult]:
        """Generate and store a summary; on any failure mark it failed and return None."""
        previous_status = None
        try:
            with self.session_factory() as session:
                record = session.get(BroadcastSession, session_id)
                if record is None:
                    raise SessionNotFoundError(session_id)
                previous_status = record.ai_summary_status
                rows = EventStore(session).get_chat_transcript_rows(session_id, limit=self.max_chat_messages)
                record.ai_summary_status = SummaryStatus.GENERATING.value
                session.commit()

            transcript = build_transcript(rows, max_lines=self.max_chat_messages)
            if not transcript:
                raise SummaryError("No chat messages found")

            result = await self.summarizer.generate_preview(transcript)

            with self.session_factory() as session:
                record = session.get(BroadcastSession, session_id)
                record.ai_summary = result.summary_text
                record.ai_summary_status = SummaryStatus.GENERATED.value
                record.ai_summary_generated_at = self.clock()
                record.ai_summary_tokens_used = result.tokens_used
                session.commit()

            self.stats['last_run_summaries'] += 1
            self.stats['total_summaries_generated'] += 1
            logger.info(f"AI summary generated for session {session_id} ({result.tokens_used} tokens)")
            return result

        except Exception as e:
            logger.error(f"Error generating AI summary for session {session_id}: {e}")
            self._mark_summary_failed(session_id, previous_status)
            return None

    def _mark_summary_failed(self, session_id: int, previous_status: Optional[str] = None):
        """Record a failed generation. A failed regeneration keeps the summary it replaces."""
        try:
            with self.session_factory() as session:
                record = session.get(BroadcastSession, session_id)
                if record is None:
                    return
                if previous_status == SummaryStatus.GENERATED.value and record.ai_summary:
                    logger.warning(f"Regeneration failed for session {session_id}, keeping the previous summary")
                    record.ai_summary_status = SummaryStatus.GENERATED.value
                else:
                    record.ai_summary_status = SummaryStatus.FAILED.value
                    record.ai_summary = None
                session.commit()
        except Exception as e:
            logger.error(f"Could not mark summary failed for session {session_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def generate_summary(self, session_id: int) -> SummaryResult:
        """Generate or regenerate the summary of an ended session.

        Raises:
            SessionNotFoundError: No such session
            ValueError: The session is still active
            SummaryError: The service is unavailable or generation failed
        """
        with self.session_factory() as session:
            record = session.get(BroadcastSession, session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            if record.status == SessionStatus.ACTIVE.value:
                raise ValueError("Cannot generate summary for active session")

        if self.summarizer is None or not self.summarizer.is_available():
            raise SummaryError("AI summary service is not configured")

        result = await self._generate_summary(session_id)
        if result is None:
            raise SummaryError(f"Failed to generate summary for session {session_id}")
        return result

    def recover_stale_summaries(self) -> int:
        """Move summaries stuck in ``generating`` longer than the stale window to ``failed``."""
        cutoff = self.clock() - timedelta(minutes=float(self.config['stale_generating_minutes']))
        with self.session_factory() as session:
            stale = session.query(BroadcastSession).filter(
                BroadcastSession.ai_summary_status == SummaryStatus.GENERATING.value,
                BroadcastSession.updated_at < cutoff,
            ).all()
            for record in stale:
                record.ai_summary_status = SummaryStatus.FAILED.value
                record.ai_summary = None
            session.commit()

        if stale:
            logger.warning(f"Marked {len(stale)} stale generating summaries as failed")
        return len(stale)
