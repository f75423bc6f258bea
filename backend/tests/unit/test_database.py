"""
Unit tests for database module.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


class TestDatabaseInit:
    """Tests for database initialization."""

    def test_init_db_creates_tables(self, test_db):
        """init_db() should create required tables."""
        from database import get_db
        with get_db() as db:
            cursor = db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
        assert {'projects', 'character_library', 'generation_jobs'} <= tables


class TestProjectOperations:
    """Tests for project persistence."""

    def test_save_and_get(self, test_db, make_panel):
        from database import save_project, get_project
        from models import Project
        project = Project(title='Saved', story_pages=[make_panel(1, narration='Hi')])
        save_project(project)

        loaded = get_project(project.id)
        assert loaded.title == 'Saved'
        assert loaded.story_pages[0].narration == 'Hi'

    def test_get_missing_returns_none(self, test_db):
        from database import get_project
        assert get_project('nonexistent-project') is None

    def test_save_overwrites(self, test_db):
        from database import save_project, get_project, list_projects
        from models import Project
        project = Project(title='Draft')
        save_project(project)
        project.title = 'Final'
        project.touch()
        save_project(project)
        assert get_project(project.id).title == 'Final'
        assert len(list_projects()) == 1

    def test_list_newest_first(self, test_db):
        from database import save_project, list_projects
        from models import Project
        older = Project(title='Older')
        older.updated_at = 1000
        newer = Project(title='Newer')
        newer.updated_at = 2000
        save_project(older)
        save_project(newer)
        assert [p.title for p in list_projects()] == ['Newer', 'Older']

    def test_delete(self, test_db):
        from database import save_project, delete_project, get_project
        from models import Project
        project = Project()
        save_project(project)
        assert delete_project(project.id) is True
        assert get_project(project.id) is None
        assert delete_project(project.id) is False

    def test_async_saves_keep_submission_order(self, test_db):
        """The last queued save wins."""
        from database import save_project_async, get_project
        from models import Project
        project = Project(title='v0')
        futures = []
        for i in range(1, 6):
            project.title = f'v{i}'
            futures.append(save_project_async(project))
        futures[-1].result(timeout=5)
        assert get_project(project.id).title == 'v5'

    def test_async_save_snapshots_the_project(self, test_db):
        """Changes after queuing do not leak into the queued save."""
        from database import save_project_async, get_project
        from models import Project
        project = Project(title='Queued')
        future = save_project_async(project)
        project.title = 'Changed later'
        future.result(timeout=5)
        assert get_project(project.id).title == 'Queued'


class TestLibraryOperations:
    """Tests for the character library."""

    def test_save_list_delete(self, test_db):
        from database import (
            save_library_character, list_library_characters, get_library_character,
            delete_library_character
        )
        from models import Character
        zed = Character(name='zed', description='Last')
        amy = Character(name='Amy', description='First')
        save_library_character(zed)
        save_library_character(amy)

        assert [c.name for c in list_library_characters()] == ['Amy', 'zed']
        assert get_library_character(amy.id).description == 'First'
        assert delete_library_character(amy.id) is True
        assert get_library_character(amy.id) is None


class TestGenerationJobs:
    """Tests for generation run bookkeeping."""

    def test_job_lifecycle(self, test_db):
        from database import (
            create_generation_job, get_generation_job, update_generation_job, has_active_generation_job
        )
        job_id = create_generation_job('project-1', 'Chapter One')
        assert get_generation_job(job_id)['status'] == 'pending'
        assert has_active_generation_job('project-1')

        update_generation_job(job_id, 'processing')
        assert get_generation_job(job_id)['started_at'] is not None
        assert has_active_generation_job('project-1')

        update_generation_job(job_id, 'completed', total_panels=6, failed_panels=1)
        job = get_generation_job(job_id)
        assert job['completed_at'] is not None
        assert (job['total_panels'], job['failed_panels']) == (6, 1)
        assert not has_active_generation_job('project-1')

    def test_task_id_does_not_change_status(self, test_db):
        from database import create_generation_job, get_generation_job, update_generation_job, set_generation_job_task_id
        job_id = create_generation_job('project-1', 'Chapter One', job_id='session-1')
        update_generation_job(job_id, 'processing')
        set_generation_job_task_id(job_id, 'celery-123')
        job = get_generation_job('session-1')
        assert job['status'] == 'processing'
        assert job['celery_task_id'] == 'celery-123'

    def test_interrupted_jobs_marked_failed(self, test_db):
        from database import create_generation_job, get_generation_job, fail_interrupted_generation_jobs
        running = create_generation_job('project-1')
        assert fail_interrupted_generation_jobs() == 1
        assert get_generation_job(running)['status'] == 'failed'

    def test_list_filters_by_project(self, test_db):
        from database import create_generation_job, list_generation_jobs
        create_generation_job('project-1')
        create_generation_job('project-2')
        jobs = list_generation_jobs(project_id='project-2')
        assert [j['project_id'] for j in jobs] == ['project-2']
