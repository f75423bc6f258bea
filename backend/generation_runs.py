"""
Chapter generation runs
Progress tracking, one-run-per-project locking and the background job body
shared by the in-process thread and the Celery task.
"""
import threading
import time
from typing import Dict, List

from logging_config import get_logger, get_request_logger
from gemini_executor import GeminiServiceError
from comic_pipeline import generate_chapter
from models import Panel, CANCELLED_REASON
from database import (
    get_project, save_project_async, update_generation_job, has_active_generation_job
)

logger = get_logger('runs')

PROGRESS_TTL = 600  # seconds a finished run's progress stays queryable

# Global progress tracking: session_id -> status dict
progress_status: Dict[str, dict] = {}


def update_progress(session_id, step, message, progress, details=None):
    """Update progress status for a session"""
    progress_status[session_id] = {
        'step': step,
        'message': message,
        'progress': progress,
        'details': details or {}
    }


def _forget_progress_later(session_id: str):
    timer = threading.Timer(PROGRESS_TTL, progress_status.pop, args=(session_id, None))
    timer.daemon = True
    timer.start()


class ProjectLocks:
    """
    Projects with a chapter run or a panel operation in flight.

    In-process holders are tracked here; chapter runs on Celery workers are
    seen through their pending/processing row in generation_jobs.
    """

    def __init__(self):
        self._holders: Dict[str, str] = {}
        self._lock = threading.Lock()

    def acquire(self, project_id: str, holder: str) -> bool:
        with self._lock:
            if project_id in self._holders or has_active_generation_job(project_id):
                return False
            self._holders[project_id] = holder
            return True

    def release(self, project_id: str):
        with self._lock:
            self._holders.pop(project_id, None)

    def is_busy(self, project_id: str) -> bool:
        with self._lock:
            if project_id in self._holders:
                return True
        return has_active_generation_job(project_id)


# Global lock table for this process
project_locks = ProjectLocks()


def _panel_stats(panels: List[Panel]) -> dict:
    return {
        'total_panels': len(panels),
        'rendered_panels': sum(1 for p in panels if p.image and not p.generation_failed),
        'failed_panels': sum(1 for p in panels if p.generation_failed),
    }


def _progress_for(stage: str, panels: List[Panel]):
    total = len(panels) or 1
    finished = sum(1 for p in panels if not p.is_generating)
    if stage == 'script':
        return 'script', f'Script ready: {len(panels)} panels', 10
    if stage == 'panel':
        return 'panels', f'Drawing panels ({finished}/{len(panels)})', 10 + int(80 * finished / total)
    if stage == 'cancelled':
        return 'cancelled', 'Generation was cancelled', 100
    return 'lettering', 'Lettering complete', 95


def run_chapter_generation(project_id: str, chapter_index: int, session_id: str, cancel_flag=None) -> dict:
    """
    Generate one chapter of a stored project and persist every step.

    The session id doubles as the generation_jobs row id and the log request
    id. Returns a small result dict (status plus panel counts).
    """
    log = get_request_logger('runs', session_id)
    start_time = time.time()
    update_generation_job(session_id, 'processing')

    try:
        project = get_project(project_id)
        if project is None:
            log.error(f"Project {project_id[:8]} not found")
            update_progress(session_id, 'error', 'Project not found', 0)
            update_generation_job(session_id, 'failed', error_message='Project not found')
            return {'status': 'failed', 'message': 'Project not found'}

        if not 0 <= chapter_index < len(project.chapters):
            log.error(f"Chapter index {chapter_index} out of range ({len(project.chapters)} chapters)")
            update_progress(session_id, 'error', 'Chapter not found', 0)
            update_generation_job(session_id, 'failed', error_message='Chapter not found')
            return {'status': 'failed', 'message': 'Chapter not found'}

        chapter = project.chapters[chapter_index]
        log.info(f"Generating chapter '{chapter.title}' for project {project_id[:8]}")
        update_progress(session_id, 'script', 'Writing the chapter script...', 5)

        project.generated_from_chapter_title = chapter.title
        project.stage = 'story-panels'
        project.story_pages = []

        def observer(stage: str, panels: List[Panel]):
            project.story_pages = panels
            project.touch()
            save_project_async(project)
            step, message, progress = _progress_for(stage, panels)
            update_progress(session_id, step, message, progress, _panel_stats(panels))

        try:
            panels = generate_chapter(
                chapter.text,
                project.characters,
                project.scenery,
                project.style,
                project.story_text,
                observer=observer,
                cancel_flag=cancel_flag,
                request_id=session_id
            )
        except GeminiServiceError as e:
            log.error(f"Chapter generation failed: {e}")
            update_progress(session_id, 'error', e.user_message, 0)
            update_generation_job(session_id, 'failed', error_message=e.user_message)
            return {'status': 'failed', 'message': e.user_message}

        project.story_pages = panels
        project.touch()
        # Queued behind the observer's saves, so the final state lands last
        save_project_async(project).result()

        stats = _panel_stats(panels)
        cancelled = any(p.failure_reason == CANCELLED_REASON for p in panels)
        status = 'cancelled' if cancelled else 'completed'
        update_generation_job(session_id, status,
                              total_panels=stats['total_panels'],
                              failed_panels=stats['failed_panels'])

        elapsed = time.time() - start_time
        log.info(f"Run {status} in {elapsed:.1f}s: {stats['rendered_panels']}/{stats['total_panels']} panels rendered")
        if cancelled:
            update_progress(session_id, 'cancelled', 'Generation was cancelled', 100, stats)
        else:
            update_progress(session_id, 'complete', 'Done!', 100, stats)
        return {'status': status, **stats}

    except Exception as e:
        log.error(f"Unexpected error: {str(e)}", exc_info=True)
        update_progress(session_id, 'error', f'Unexpected error: {str(e)}', 0)
        update_generation_job(session_id, 'failed', error_message=f'Unexpected error: {str(e)}')
        return {'status': 'failed', 'message': str(e)}

    finally:
        _forget_progress_later(session_id)


def job_progress(job: dict) -> dict:
    """Progress dict for a run known only from its generation_jobs row."""
    status = job.get('status')
    details = {
        'total_panels': job.get('total_panels') or 0,
        'failed_panels': job.get('failed_panels') or 0,
    }
    if status == 'completed':
        return {'step': 'complete', 'message': 'Done!', 'progress': 100, 'details': details}
    if status == 'cancelled':
        return {'step': 'cancelled', 'message': 'Generation was cancelled', 'progress': 100, 'details': details}
    if status == 'failed':
        return {'step': 'error', 'message': job.get('error_message') or 'Generation failed', 'progress': 0,
                'details': details}
    return {'step': status or 'pending', 'message': 'Generation in progress...', 'progress': 5, 'details': details}
