"""
Character Library API Routes
Characters saved for reuse across projects
"""
from flask import Blueprint, request, jsonify

from logging_config import get_logger
from models import Character
from database import (
    save_library_character, get_library_character, list_library_characters,
    delete_library_character
)

logger = get_logger('library')

library_bp = Blueprint('library', __name__, url_prefix='/api/library/characters')


@library_bp.route('', methods=['GET'])
def list_characters():
    """List saved characters, by name"""
    try:
        return jsonify({'characters': [c.to_dict() for c in list_library_characters()]})
    except Exception as e:
        logger.error(f"Failed to list library characters: {e}")
        return jsonify({'error': str(e)}), 500


@library_bp.route('', methods=['POST'])
def save_character():
    """
    Save a character to the library.

    Expected JSON:
    - name: Character name (required)
    - description: Visual and personality description
    - image: Reference image as a data URL (optional)
    - id: Existing library id to overwrite (optional)
    """
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    if not name:
        return jsonify({'error': 'Character name is required'}), 400

    existing = get_library_character(data['id']) if data.get('id') else None
    if existing:
        existing.name = name
        existing.description = data.get('description', existing.description)
        existing.image = data.get('image', existing.image)
        existing.touch()
        character = existing
    else:
        character = Character(name=name, description=data.get('description', ''), image=data.get('image'))

    save_library_character(character)
    logger.info(f"Saved library character {character.id[:8]} '{character.name}'")
    return jsonify({'character': character.to_dict()}), 200 if existing else 201


@library_bp.route('/<character_id>', methods=['GET'])
def get_character(character_id):
    character = get_library_character(character_id)
    if not character:
        return jsonify({'error': 'Character not found'}), 404
    return jsonify({'character': character.to_dict()})


@library_bp.route('/<character_id>', methods=['DELETE'])
def delete_character(character_id):
    if delete_library_character(character_id):
        logger.info(f"Deleted library character {character_id[:8]}")
        return jsonify({'status': 'deleted', 'character_id': character_id})
    return jsonify({'error': 'Character not found'}), 404
