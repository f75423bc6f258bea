"""
Project API Routes
CRUD for comic projects plus manual panel edits (reorder, lettering)

Any change to a project is rejected with 409 while a chapter run or a
panel operation holds the project.
"""
import uuid
from flask import Blueprint, request, jsonify

from logging_config import get_logger
from models import Project, Character, Scenery, Chapter, STAGES, reorder_panels
from lettering import add_element, update_element, delete_element, LetteringEditError
from database import get_project, save_project, list_projects, delete_project, get_library_character
from generation_runs import project_locks

logger = get_logger('projects')

projects_bp = Blueprint('projects', __name__, url_prefix='/api/projects')

UPDATABLE_FIELDS = (
    'title', 'story_text', 'inking_style', 'coloring_style', 'stage',
    'generate_detailed_sheets', 'chapters', 'characters', 'scenery',
)


def _summary(project: Project) -> dict:
    return {
        'id': project.id,
        'title': project.title,
        'stage': project.stage,
        'chapters': len(project.chapters),
        'panels': len(project.story_pages),
        'generated_from_chapter_title': project.generated_from_chapter_title,
        'created_at': project.created_at,
        'updated_at': project.updated_at,
    }


def _busy_response():
    return jsonify({
        'error': 'project_busy',
        'message': 'A generation is in progress for this project. Wait for it to finish or cancel it.'
    }), 409


def _mutate_project(project_id, mutate):
    """
    Load, change and save a project while holding its lock.

    `mutate(project)` returns a JSON-able result. LookupError maps to 404;
    LetteringEditError and ValueError map to 400.
    """
    holder = f'edit:{uuid.uuid4().hex[:8]}'
    if not project_locks.acquire(project_id, holder):
        if not get_project(project_id):
            return jsonify({'error': 'Project not found'}), 404
        return _busy_response()
    try:
        project = get_project(project_id)
        if not project:
            return jsonify({'error': 'Project not found'}), 404
        try:
            result = mutate(project)
        except LookupError as e:
            return jsonify({'error': str(e)}), 404
        except (LetteringEditError, ValueError, TypeError) as e:
            return jsonify({'error': str(e)}), 400
        project.touch()
        save_project(project)
        return jsonify(result)
    finally:
        project_locks.release(project_id)


def _panel_index(project: Project, panel_index: int) -> int:
    if not 0 <= panel_index < len(project.story_pages):
        raise LookupError('Panel not found')
    return panel_index


@projects_bp.route('', methods=['GET'])
def list_projects_api():
    """List projects, most recently updated first"""
    try:
        return jsonify({'projects': [_summary(p) for p in list_projects()]})
    except Exception as e:
        logger.error(f"Failed to list projects: {e}")
        return jsonify({'error': str(e)}), 500


@projects_bp.route('', methods=['POST'])
def create_project_api():
    """
    Create a project.

    Expected JSON (all optional):
    - title, story_text, inking_style, coloring_style, generate_detailed_sheets
    """
    data = request.get_json(silent=True) or {}
    project = Project.from_dict({
        'title': data.get('title'),
        'story_text': data.get('story_text'),
        'inking_style': data.get('inking_style'),
        'coloring_style': data.get('coloring_style'),
        'generate_detailed_sheets': data.get('generate_detailed_sheets', True),
    })
    save_project(project)
    logger.info(f"Created project {project.id[:8]} '{project.title}'")
    return jsonify({'project': project.to_dict()}), 201


@projects_bp.route('/<project_id>', methods=['GET'])
def get_project_api(project_id):
    project = get_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    return jsonify({'project': project.to_dict()})


@projects_bp.route('/<project_id>', methods=['PUT'])
def update_project_api(project_id):
    """
    Update project settings and story entities.

    Accepted fields: title, story_text, inking_style, coloring_style, stage,
    generate_detailed_sheets, chapters, characters, scenery. Panels are only
    changed through the panel endpoints.
    """
    data = request.get_json(silent=True) or {}
    unknown = set(data) - set(UPDATABLE_FIELDS)
    if unknown:
        return jsonify({'error': f"Cannot update field(s): {', '.join(sorted(unknown))}"}), 400

    def mutate(project):
        if 'stage' in data and data['stage'] not in STAGES:
            raise ValueError(f"Unknown stage: {data['stage']}")
        for name in ('title', 'story_text', 'inking_style', 'coloring_style', 'stage'):
            if name in data:
                setattr(project, name, data[name] or '')
        if 'generate_detailed_sheets' in data:
            project.generate_detailed_sheets = bool(data['generate_detailed_sheets'])
        if 'chapters' in data:
            project.chapters = [Chapter(title=c.get('title', ''), text=c.get('text', '')) for c in data['chapters']]
        if 'characters' in data:
            project.characters = [Character.from_dict(c) for c in data['characters']]
        if 'scenery' in data:
            project.scenery = [Scenery.from_dict(s) for s in data['scenery']]
        return {'project': project.to_dict()}

    return _mutate_project(project_id, mutate)


@projects_bp.route('/<project_id>', methods=['DELETE'])
def delete_project_api(project_id):
    if not project_locks.acquire(project_id, 'delete'):
        return _busy_response()
    try:
        if delete_project(project_id):
            logger.info(f"Deleted project {project_id[:8]}")
            return jsonify({'status': 'deleted', 'project_id': project_id})
        return jsonify({'error': 'Project not found'}), 404
    finally:
        project_locks.release(project_id)


@projects_bp.route('/<project_id>/characters/from-library', methods=['POST'])
def add_library_character_api(project_id):
    """
    Copy a saved library character into the project.

    Expected JSON:
    - character_id: Library character id
    """
    data = request.get_json(silent=True) or {}
    saved = get_library_character(data.get('character_id', ''))
    if not saved:
        return jsonify({'error': 'Library character not found'}), 404

    def mutate(project):
        character = Character(name=saved.name, description=saved.description, image=saved.image)
        project.characters.append(character)
        return {'character': character.to_dict()}

    return _mutate_project(project_id, mutate)


@projects_bp.route('/<project_id>/panels/reorder', methods=['POST'])
def reorder_panels_api(project_id):
    """
    Move a panel and renumber pages 1..N.

    Expected JSON:
    - from_index, to_index: 0-based positions
    """
    data = request.get_json(silent=True) or {}

    def mutate(project):
        try:
            from_index = int(data['from_index'])
            to_index = int(data['to_index'])
        except (KeyError, TypeError, ValueError):
            raise ValueError('from_index and to_index are required integers')
        try:
            project.story_pages = reorder_panels(project.story_pages, from_index, to_index)
        except IndexError as e:
            raise ValueError(str(e))
        return {'panels': [p.to_dict() for p in project.story_pages]}

    return _mutate_project(project_id, mutate)


@projects_bp.route('/<project_id>/panels/<int:panel_index>/lettering', methods=['POST'])
def add_lettering_api(project_id, panel_index):
    """
    Add a lettering element with the defaults for its type.

    Expected JSON:
    - type: dialogue, narration, thought or shout
    """
    data = request.get_json(silent=True) or {}

    def mutate(project):
        index = _panel_index(project, panel_index)
        project.story_pages[index] = add_element(project.story_pages[index], data.get('type'))
        return {'panel': project.story_pages[index].to_dict()}

    return _mutate_project(project_id, mutate)


@projects_bp.route('/<project_id>/panels/<int:panel_index>/lettering/<element_id>', methods=['PATCH'])
def update_lettering_api(project_id, panel_index, element_id):
    """Partially update one lettering element (text, position, style, tail)"""
    data = request.get_json(silent=True) or {}

    def mutate(project):
        index = _panel_index(project, panel_index)
        project.story_pages[index] = update_element(project.story_pages[index], element_id, data)
        return {'panel': project.story_pages[index].to_dict()}

    return _mutate_project(project_id, mutate)


@projects_bp.route('/<project_id>/panels/<int:panel_index>/lettering/<element_id>', methods=['DELETE'])
def delete_lettering_api(project_id, panel_index, element_id):
    def mutate(project):
        index = _panel_index(project, panel_index)
        project.story_pages[index] = delete_element(project.story_pages[index], element_id)
        return {'panel': project.story_pages[index].to_dict()}

    return _mutate_project(project_id, mutate)
