"""
Unit tests for background chapter runs and project locking.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import generation_runs
from generation_runs import run_chapter_generation, ProjectLocks, progress_status, job_progress
from gemini_service import ScriptGenerationError
from models import CANCELLED_REASON


def _no_timers(monkeypatch):
    monkeypatch.setattr(generation_runs, '_forget_progress_later', lambda session_id: None)


class TestRunChapterGeneration:
    """Tests for run_chapter_generation()."""

    def test_completed_run_persists_panels(self, monkeypatch, sample_project, make_panel, png_data_url):
        from database import create_generation_job, get_generation_job, get_project
        _no_timers(monkeypatch)
        seen = {}

        def fake_generate(chapter_text, characters, scenery, style, full_story_text, observer=None,
                          cancel_flag=None, request_id=None):
            seen['chapter_text'] = chapter_text
            seen['characters'] = [c.name for c in characters]
            panels = [make_panel(1, image=png_data_url, lettering=[]),
                      make_panel(2, generation_failed=True, failure_reason='Blocked')]
            observer('panel', panels)
            return panels

        monkeypatch.setattr(generation_runs, 'generate_chapter', fake_generate)
        create_generation_job(sample_project.id, 'The Crossing', job_id='run-1')

        result = run_chapter_generation(sample_project.id, 1, 'run-1')

        assert result['status'] == 'completed'
        assert seen == {'chapter_text': 'She rows out to sea.', 'characters': ['Mara']}
        stored = get_project(sample_project.id)
        assert stored.generated_from_chapter_title == 'The Crossing'
        assert stored.stage == 'story-panels'
        assert [p.state for p in stored.story_pages] == ['complete', 'failed']
        job = get_generation_job('run-1')
        assert (job['status'], job['total_panels'], job['failed_panels']) == ('completed', 2, 1)
        assert progress_status['run-1']['step'] == 'complete'

    def test_cancelled_run(self, monkeypatch, sample_project, make_panel, png_data_url):
        from database import create_generation_job, get_generation_job
        _no_timers(monkeypatch)
        panels = [make_panel(1, image=png_data_url),
                  make_panel(2, generation_failed=True, failure_reason=CANCELLED_REASON)]
        monkeypatch.setattr(generation_runs, 'generate_chapter', lambda *args, **kwargs: panels)
        create_generation_job(sample_project.id, job_id='run-2')

        assert run_chapter_generation(sample_project.id, 0, 'run-2')['status'] == 'cancelled'
        assert get_generation_job('run-2')['status'] == 'cancelled'

    def test_script_failure_records_user_message(self, monkeypatch, sample_project):
        from database import create_generation_job, get_generation_job, get_project
        _no_timers(monkeypatch)

        def broken(*args, **kwargs):
            raise ScriptGenerationError('empty', 'The story script generation was blocked.')

        monkeypatch.setattr(generation_runs, 'generate_chapter', broken)
        create_generation_job(sample_project.id, job_id='run-3')

        result = run_chapter_generation(sample_project.id, 0, 'run-3')

        assert result == {'status': 'failed', 'message': 'The story script generation was blocked.'}
        job = get_generation_job('run-3')
        assert job['status'] == 'failed'
        assert job['error_message'] == 'The story script generation was blocked.'
        # Existing panels are untouched when the script fails
        assert len(get_project(sample_project.id).story_pages) == 3

    def test_missing_chapter(self, monkeypatch, sample_project):
        from database import create_generation_job, get_generation_job
        _no_timers(monkeypatch)
        create_generation_job(sample_project.id, job_id='run-4')
        assert run_chapter_generation(sample_project.id, 9, 'run-4')['status'] == 'failed'
        assert get_generation_job('run-4')['error_message'] == 'Chapter not found'


class TestProjectLocks:
    """Tests for one-operation-per-project locking."""

    def test_second_acquire_rejected(self, test_db):
        locks = ProjectLocks()
        assert locks.acquire('project-1', 'a')
        assert not locks.acquire('project-1', 'b')
        assert locks.acquire('project-2', 'c')
        locks.release('project-1')
        assert locks.acquire('project-1', 'b')

    def test_active_job_row_counts_as_busy(self, test_db):
        from database import create_generation_job, update_generation_job
        locks = ProjectLocks()
        job_id = create_generation_job('project-1')
        assert locks.is_busy('project-1')
        assert not locks.acquire('project-1', 'edit')
        update_generation_job(job_id, 'completed')
        assert not locks.is_busy('project-1')


class TestJobProgress:
    """Tests for progress reported from a job row."""

    def test_failed_job(self):
        progress = job_progress({'status': 'failed', 'error_message': 'Quota', 'total_panels': 0})
        assert (progress['step'], progress['message']) == ('error', 'Quota')

    def test_processing_job(self):
        assert job_progress({'status': 'processing'})['step'] == 'processing'
