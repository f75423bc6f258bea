"""
Database Module
SQLite storage for comic projects, the character library and generation jobs
"""
import sqlite3
import os
import json
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor, Future

from logging_config import get_logger
from models import Project, Character

logger = get_logger('database')

DEFAULT_DB_PATH = os.path.join(os.path.dirname(__file__), 'comic_creator.db')

# Single worker keeps fire-and-forget saves in submission order
_save_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='project-save')


def _db_path() -> str:
    # Read dynamically so tests can point at a temp file
    return os.getenv('DATABASE_PATH', DEFAULT_DB_PATH)


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(_db_path())
    conn.row_factory = sqlite3.Row  # Enable dict-like access
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Initialize database tables."""
    with get_db() as conn:
        cursor = conn.cursor()

        # Projects are stored as one JSON document each
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS character_library (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        ''')

        # One row per generate-chapter run
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS generation_jobs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                chapter_title TEXT,
                status TEXT DEFAULT 'pending',
                total_panels INTEGER DEFAULT 0,
                failed_panels INTEGER DEFAULT 0,
                error_message TEXT,
                celery_task_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                started_at TIMESTAMP,
                completed_at TIMESTAMP
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_projects_updated_at ON projects(updated_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_generation_jobs_project ON generation_jobs(project_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_generation_jobs_status ON generation_jobs(status)')


# ============ Project Operations ============

def save_project(project: Project):
    """Insert or replace a project."""
    with get_db() as conn:
        conn.execute('''
            INSERT INTO projects (id, title, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                data = excluded.data,
                updated_at = excluded.updated_at
        ''', (project.id, project.title, json.dumps(project.to_dict()),
              project.created_at, project.updated_at))


def _save_quietly(project: Project):
    try:
        save_project(project)
    except Exception as e:
        logger.error(f"Background save of project {project.id[:8]} failed: {e}", exc_info=True)


def save_project_async(project: Project) -> Future:
    """Queue a save without waiting for it; saves run in submission order."""
    snapshot = Project.from_dict(project.to_dict())
    return _save_executor.submit(_save_quietly, snapshot)


def get_project(project_id: str) -> Optional[Project]:
    """Get project by ID."""
    with get_db() as conn:
        row = conn.execute('SELECT data FROM projects WHERE id = ?', (project_id,)).fetchone()
        if row:
            return Project.from_dict(json.loads(row['data']))
        return None


def list_projects() -> List[Project]:
    """All projects, most recently updated first."""
    with get_db() as conn:
        rows = conn.execute('SELECT data FROM projects ORDER BY updated_at DESC').fetchall()
        return [Project.from_dict(json.loads(row['data'])) for row in rows]


def delete_project(project_id: str) -> bool:
    """Delete a project. Returns False if it did not exist."""
    with get_db() as conn:
        cursor = conn.execute('DELETE FROM projects WHERE id = ?', (project_id,))
        return cursor.rowcount > 0


# ============ Character Library Operations ============

def save_library_character(character: Character):
    with get_db() as conn:
        conn.execute('''
            INSERT INTO character_library (id, name, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                data = excluded.data,
                updated_at = excluded.updated_at
        ''', (character.id, character.name, json.dumps(character.to_dict()),
              character.created_at, character.updated_at))


def get_library_character(character_id: str) -> Optional[Character]:
    with get_db() as conn:
        row = conn.execute('SELECT data FROM character_library WHERE id = ?', (character_id,)).fetchone()
        if row:
            return Character.from_dict(json.loads(row['data']))
        return None


def list_library_characters() -> List[Character]:
    with get_db() as conn:
        rows = conn.execute('SELECT data FROM character_library ORDER BY name COLLATE NOCASE').fetchall()
        return [Character.from_dict(json.loads(row['data'])) for row in rows]


def delete_library_character(character_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute('DELETE FROM character_library WHERE id = ?', (character_id,))
        return cursor.rowcount > 0


# ============ Generation Job Operations ============

def create_generation_job(project_id: str, chapter_title: str = None, job_id: str = None) -> str:
    """Create a new generation job and return its ID."""
    job_id = job_id or str(uuid.uuid4())
    with get_db() as conn:
        conn.execute('''
            INSERT INTO generation_jobs (id, project_id, chapter_title)
            VALUES (?, ?, ?)
        ''', (job_id, project_id, chapter_title))
    return job_id


def get_generation_job(job_id: str) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        row = conn.execute('SELECT * FROM generation_jobs WHERE id = ?', (job_id,)).fetchone()
        return dict(row) if row else None


def update_generation_job(
    job_id: str,
    status: str,
    error_message: str = None,
    total_panels: int = None,
    failed_panels: int = None,
    celery_task_id: str = None
):
    """Update job status and counters."""
    with get_db() as conn:
        updates = ['status = ?']
        params = [status]

        if status == 'processing':
            updates.append('started_at = ?')
            params.append(datetime.utcnow().isoformat())
        elif status in ('completed', 'failed', 'cancelled'):
            updates.append('completed_at = ?')
            params.append(datetime.utcnow().isoformat())

        if error_message is not None:
            updates.append('error_message = ?')
            params.append(error_message)

        if total_panels is not None:
            updates.append('total_panels = ?')
            params.append(total_panels)

        if failed_panels is not None:
            updates.append('failed_panels = ?')
            params.append(failed_panels)

        if celery_task_id is not None:
            updates.append('celery_task_id = ?')
            params.append(celery_task_id)

        params.append(job_id)
        conn.execute(f'''
            UPDATE generation_jobs SET {', '.join(updates)} WHERE id = ?
        ''', params)


def list_generation_jobs(project_id: str = None, status: str = None, limit: int = 50) -> List[Dict[str, Any]]:
    """List generation jobs, newest first."""
    with get_db() as conn:
        query = 'SELECT * FROM generation_jobs WHERE 1=1'
        params = []

        if project_id:
            query += ' AND project_id = ?'
            params.append(project_id)

        if status:
            query += ' AND status = ?'
            params.append(status)

        query += ' ORDER BY created_at DESC LIMIT ?'
        params.append(limit)

        return [dict(row) for row in conn.execute(query, params).fetchall()]


def has_active_generation_job(project_id: str) -> bool:
    """True while a chapter run for this project is pending or processing."""
    with get_db() as conn:
        row = conn.execute('''
            SELECT 1 FROM generation_jobs
            WHERE project_id = ? AND status IN ('pending', 'processing')
            LIMIT 1
        ''', (project_id,)).fetchone()
        return row is not None


def fail_interrupted_generation_jobs() -> int:
    """Mark runs left pending/processing by a previous process as failed."""
    with get_db() as conn:
        cursor = conn.execute('''
            UPDATE generation_jobs
            SET status = 'failed', error_message = 'Interrupted by a server restart.', completed_at = ?
            WHERE status IN ('pending', 'processing')
        ''', (datetime.utcnow().isoformat(),))
        return cursor.rowcount


def set_generation_job_task_id(job_id: str, celery_task_id: str):
    """Record the Celery task id without touching the job status."""
    with get_db() as conn:
        conn.execute('UPDATE generation_jobs SET celery_task_id = ? WHERE id = ?', (celery_task_id, job_id))


# Initialize database on import
init_db()
