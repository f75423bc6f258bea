"""
Celery Tasks
Chapter generation on a worker, cancellable from the web process through Redis
"""
from celery_app import celery_app
from cancel_flags import RedisCancelFlag
from generation_runs import run_chapter_generation

from logging_config import get_logger

logger = get_logger('tasks')


@celery_app.task(bind=True, max_retries=0)
def generate_chapter_task(self, project_id: str, chapter_index: int, session_id: str):
    """
    Generate one chapter of a stored project.

    Args:
        project_id: Project to update
        chapter_index: Index into project.chapters
        session_id: generation_jobs row id, also the cancel flag key
    """
    logger.info(f"[Run {session_id[:8]}] Worker picked up chapter {chapter_index} of project {project_id[:8]}")
    cancel_flag = RedisCancelFlag(session_id)
    try:
        return run_chapter_generation(project_id, chapter_index, session_id, cancel_flag=cancel_flag)
    finally:
        cancel_flag.clear()
