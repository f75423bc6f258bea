"""
Comic Creator - Flask Backend
"""
import os
import uuid
import threading
from concurrent.futures import ThreadPoolExecutor
from flask import Flask, request, jsonify
from flask_cors import CORS
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

# Import logging (must be after dotenv for LOG_DIR/LOG_LEVEL env vars)
from logging_config import setup_logging, get_logger, get_request_logger

# Initialize logging
setup_logging()
logger = get_logger('app')

# Import our modules
from key_pool import ConfigurationError
from gemini_executor import GeminiServiceError, RateLimitExhaustedError, NoCredentialsError
from gemini_service import analyze_full_story, generate_reference_image, generate_character_sheet
from comic_pipeline import regenerate_panel, edit_panel, PanelEditError
from cancel_flags import cancel_registry, RedisCancelFlag
from generation_runs import (
    progress_status, update_progress, project_locks, run_chapter_generation, job_progress
)
from database import (
    get_project, save_project, save_project_async, create_generation_job,
    get_generation_job, set_generation_job_task_id, fail_interrupted_generation_jobs
)
from project_routes import projects_bp
from library_routes import library_bp
from admin_routes import admin_bp

USE_CELERY = os.getenv('USE_CELERY', 'false').lower() == 'true'
SHEET_WORKERS = 4

app = Flask(__name__)
CORS(app)

# Register blueprints
app.register_blueprint(projects_bp)
app.register_blueprint(library_bp)
app.register_blueprint(admin_bp)

app.config['MAX_CONTENT_LENGTH'] = 64 * 1024 * 1024  # projects carry base64 images

if not USE_CELERY:
    # Without workers, nothing can still be running from a previous process
    interrupted = fail_interrupted_generation_jobs()
    if interrupted:
        logger.warning(f"Marked {interrupted} interrupted generation run(s) as failed")


def service_error_response(e: Exception):
    """JSON error body and status code for a failed Gemini call."""
    if isinstance(e, ConfigurationError):
        return jsonify({'error': 'configuration_error', 'message': str(e)}), 503
    if isinstance(e, RateLimitExhaustedError):
        return jsonify({'error': e.classification, 'message': e.user_message}), 429
    if isinstance(e, NoCredentialsError):
        return jsonify({'error': e.classification, 'message': e.user_message}), 503
    return jsonify({'error': e.classification, 'message': e.user_message}), 502


def _busy_response():
    return jsonify({
        'error': 'project_busy',
        'message': 'A generation is in progress for this project. Wait for it to finish or cancel it.'
    }), 409


@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({'status': 'ok', 'message': 'Comic Creator API is running'})


@app.route('/api/status/<session_id>', methods=['GET'])
def get_status(session_id):
    """Get progress status for a generation session"""
    if session_id in progress_status:
        return jsonify(progress_status[session_id])
    # Runs on Celery workers only report through their job row
    job = get_generation_job(session_id)
    if job:
        return jsonify(job_progress(job))
    return jsonify({'step': 'unknown', 'message': 'Session not found', 'progress': 0})


# ============ Story setup ============

@app.route('/api/projects/<project_id>/analyze', methods=['POST'])
def analyze_story(project_id):
    """
    Split the story into chapters and extract characters and scenery.

    Expected JSON:
    - story_text: Story to analyze (optional, defaults to the stored text)
    """
    request_id = str(uuid.uuid4())[:8]
    log = get_request_logger('app', request_id)

    project = get_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True) or {}
    story_text = (data.get('story_text') or project.story_text or '').strip()
    if not story_text:
        return jsonify({'error': 'Story text is required'}), 400

    try:
        result = analyze_full_story(story_text, request_id=request_id)
    except (GeminiServiceError, ConfigurationError) as e:
        log.error(f"Story analysis failed: {e}")
        return service_error_response(e)

    project.story_text = story_text
    project.chapters = result['chapters']
    project.characters = result['characters']
    project.scenery = result['scenery']
    project.stage = 'identification'
    project.touch()
    save_project(project)

    log.info(f"Project {project_id[:8]} analyzed")
    return jsonify({'project': project.to_dict()})


@app.route('/api/projects/<project_id>/references', methods=['POST'])
def create_reference_image(project_id):
    """
    Generate a reference image for one character or scenery entry.

    Expected JSON:
    - entity_type: 'character' or 'scenery'
    - entity_id: Id of the character or scenery entry
    """
    request_id = str(uuid.uuid4())[:8]
    log = get_request_logger('app', request_id)

    project = get_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True) or {}
    entity_type = data.get('entity_type')
    entity_id = data.get('entity_id')

    if entity_type == 'character':
        entities = project.characters
    elif entity_type == 'scenery':
        entities = project.scenery
    else:
        return jsonify({'error': "entity_type must be 'character' or 'scenery'"}), 400

    entity = next((e for e in entities if e.id == entity_id), None)
    if entity is None:
        return jsonify({'error': f'{entity_type.capitalize()} not found'}), 404

    art_style = f'{project.inking_style}. {project.coloring_style}'
    try:
        entity.image = generate_reference_image(
            entity.description,
            entity_type,
            art_style,
            name=getattr(entity, 'name', None),
            request_id=request_id
        )
    except (GeminiServiceError, ConfigurationError) as e:
        log.error(f"Reference image failed for {entity_type} {entity_id}: {e}")
        return service_error_response(e)

    project.touch()
    save_project(project)
    return jsonify({entity_type: entity.to_dict()})


@app.route('/api/projects/<project_id>/character-sheets', methods=['POST'])
def create_character_sheets(project_id):
    """
    Turn character reference images into multi-view character sheets.

    Expected JSON:
    - character_ids: Characters to process (optional, defaults to all with an image)

    Failures are reported per character; the other sheets are still saved.
    """
    request_id = str(uuid.uuid4())[:8]
    log = get_request_logger('app', request_id)

    project = get_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True) or {}
    wanted = set(data['character_ids']) if data.get('character_ids') is not None else None
    targets = [
        c for c in project.characters
        if c.image and (wanted is None or c.id in wanted)
    ]

    errors = []
    if project.generate_detailed_sheets and targets:
        def _sheet(character):
            try:
                return character, generate_character_sheet(character, request_id=request_id), None
            except (GeminiServiceError, ConfigurationError) as e:
                return character, None, e

        with ThreadPoolExecutor(max_workers=min(SHEET_WORKERS, len(targets))) as executor:
            for character, sheet, error in executor.map(_sheet, targets):
                if error is not None:
                    log.error(f"Character sheet failed for {character.name}: {error}")
                    errors.append({
                        'character_id': character.id,
                        'message': getattr(error, 'user_message', str(error))
                    })
                    continue
                character.image = sheet
                character.touch()

    project.stage = 'character-sheets'
    project.touch()
    save_project(project)

    log.info(f"Character sheets: {len(targets) - len(errors)}/{len(targets)} generated")
    return jsonify({'project': project.to_dict(), 'errors': errors})


# ============ Chapter generation ============

def _start_thread_run(project_id: str, chapter_index: int, session_id: str):
    cancel_flag = cancel_registry.register(session_id)

    def target():
        try:
            run_chapter_generation(project_id, chapter_index, session_id, cancel_flag=cancel_flag)
        finally:
            cancel_registry.release(session_id)
            project_locks.release(project_id)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()


@app.route('/api/projects/<project_id>/chapters/<int:chapter_index>/generate', methods=['POST'])
def generate_chapter_route(project_id, chapter_index):
    """
    Start generating a chapter's panels (async)

    Returns session_id immediately, then runs generation in background.
    Poll /api/status/<session_id> for progress and reload the project for panels.
    """
    session_id = str(uuid.uuid4())
    log = get_request_logger('app', session_id)

    project = get_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not 0 <= chapter_index < len(project.chapters):
        return jsonify({'error': 'Chapter not found'}), 404

    if not project_locks.acquire(project_id, session_id):
        log.warning(f"Rejected second run for project {project_id[:8]}")
        return _busy_response()

    chapter = project.chapters[chapter_index]
    try:
        create_generation_job(project_id, chapter.title, job_id=session_id)
        update_progress(session_id, 'starting', 'Starting generation...', 0)

        if USE_CELERY:
            from tasks import generate_chapter_task
            result = generate_chapter_task.delay(project_id, chapter_index, session_id)
            set_generation_job_task_id(session_id, result.id)
            # The pending job row keeps the project busy from here on
            project_locks.release(project_id)
            log.info(f"Dispatched chapter '{chapter.title}' to Celery task {result.id}")
        else:
            _start_thread_run(project_id, chapter_index, session_id)
            log.info(f"Background thread started for chapter '{chapter.title}'")

    except Exception as e:
        project_locks.release(project_id)
        log.error(f"Failed to start generation: {e}", exc_info=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500

    return jsonify({
        'status': 'started',
        'session_id': session_id,
        'message': 'Generation started. Poll /api/status/{session_id} for progress.'
    })


@app.route('/api/generation/<session_id>/cancel', methods=['POST'])
def cancel_generation(session_id):
    """Ask a running chapter generation to stop before its next panel"""
    if cancel_registry.cancel(session_id):
        return jsonify({'status': 'cancelling', 'session_id': session_id})

    job = get_generation_job(session_id)
    if USE_CELERY and job and job['status'] in ('pending', 'processing'):
        RedisCancelFlag(session_id).set()
        return jsonify({'status': 'cancelling', 'session_id': session_id})

    return jsonify({'error': 'No running generation for this session'}), 404


# ============ Single panel operations ============

def _load_panel(project_id, panel_index):
    project = get_project(project_id)
    if not project:
        return None, (jsonify({'error': 'Project not found'}), 404)
    if not 0 <= panel_index < len(project.story_pages):
        return None, (jsonify({'error': 'Panel not found'}), 404)
    return project, None


def _panel_saver(project, panel_index):
    def on_update(panel):
        project.story_pages[panel_index] = panel
        project.touch()
        save_project_async(project)
    return on_update


@app.route('/api/projects/<project_id>/panels/<int:panel_index>/regenerate', methods=['POST'])
def regenerate_panel_route(project_id, panel_index):
    """Re-render one panel (continuing from the previous panel) and re-letter it"""
    request_id = str(uuid.uuid4())[:8]
    log = get_request_logger('app', request_id)

    project, error = _load_panel(project_id, panel_index)
    if error:
        return error
    if not project_locks.acquire(project_id, f'regenerate:{request_id}'):
        return _busy_response()

    try:
        preceding_image = project.story_pages[panel_index - 1].image if panel_index > 0 else None
        panel = regenerate_panel(
            project.story_pages[panel_index],
            preceding_image,
            project.characters,
            project.scenery,
            project.style,
            project.story_text,
            on_update=_panel_saver(project, panel_index),
            request_id=request_id
        )
        project.story_pages[panel_index] = panel
        project.touch()
        save_project_async(project).result()
        log.info(f"Panel {panel_index + 1} of project {project_id[:8]} regenerated: {panel.state}")
        return jsonify({'panel': panel.to_dict()})
    finally:
        project_locks.release(project_id)


@app.route('/api/projects/<project_id>/panels/<int:panel_index>/edit', methods=['POST'])
def edit_panel_route(project_id, panel_index):
    """
    Apply a free-form edit to a panel's image.

    Expected JSON:
    - instruction: What to change
    """
    request_id = str(uuid.uuid4())[:8]
    log = get_request_logger('app', request_id)

    project, error = _load_panel(project_id, panel_index)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    instruction = data.get('instruction', '')

    if not project_locks.acquire(project_id, f'edit:{request_id}'):
        return _busy_response()

    try:
        try:
            panel = edit_panel(
                project.story_pages[panel_index],
                instruction,
                on_update=_panel_saver(project, panel_index),
                request_id=request_id
            )
        except PanelEditError as e:
            cause = e.__cause__
            log.error(f"Edit failed for panel {panel_index + 1}: {e}")
            # Wait for the observer's restore of the original panel
            save_project_async(project).result()
            if cause is None:
                return jsonify({'error': e.classification, 'message': e.user_message}), 400
            status = 429 if isinstance(cause, RateLimitExhaustedError) else 502
            return jsonify({'error': e.classification, 'message': e.user_message}), status

        project.story_pages[panel_index] = panel
        project.touch()
        save_project_async(project).result()
        log.info(f"Panel {panel_index + 1} of project {project_id[:8]} edited")
        return jsonify({'panel': panel.to_dict()})
    finally:
        project_locks.release(project_id)


if __name__ == '__main__':
    logger.info("Starting Flask server on port 5001")
    app.run(debug=False, host='0.0.0.0', port=5001)
