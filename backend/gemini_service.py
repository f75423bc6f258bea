"""
Gemini Service - comic generation calls
Story analysis, scripting, reference art, panel art, lettering and edits.

Every call goes through gemini_executor.execute so quota errors rotate
across the key pool.
"""
import os
import json
import time
from typing import Optional, List
from concurrent.futures import ThreadPoolExecutor

from dotenv import load_dotenv

load_dotenv()

from google import genai
from google.genai import types

from logging_config import get_logger, get_request_logger
from gemini_executor import (
    execute, is_rate_limit_error, BackendOperationError,
    RateLimitExhaustedError
)
from key_pool import get_key_pool
from image_utils import to_data_url, split_data_url, placeholder_data_url
from lettering import fallback_lettering, parse_lettering
from models import Panel, Character, Scenery, Chapter, StyleConfig, LetteringElement, LAYOUTS, renumber_panels

logger = get_logger('gemini')

# Model names
TEXT_MODEL = os.getenv('TEXT_MODEL', 'gemini-2.5-flash')
IMAGE_MODEL = os.getenv('IMAGE_MODEL', 'gemini-2.5-flash-image')
REFERENCE_IMAGE_MODEL = os.getenv('REFERENCE_IMAGE_MODEL', 'imagen-4.0-generate-001')

REQUEST_TIMEOUT = int(os.getenv('REQUEST_TIMEOUT', '120'))  # seconds per API call
KEY_TEST_WORKERS = 8

LAYOUT_ASPECT_RATIOS = {
    'standard': '1:1',
    'wide': '16:9',
    'splash': '16:9',
    'tall': '3:4',
}

PLACEHOLDER_LIMIT_TEXT = 'API Limit Reached'


class ScriptGenerationError(BackendOperationError):
    """The chapter script came back empty or unparsable"""
    pass


def _get_client(api_key: str, timeout: int = REQUEST_TIMEOUT):
    """Gemini client for one key, with the HTTP timeout in milliseconds."""
    return genai.Client(
        api_key=api_key,
        http_options={'timeout': timeout * 1000}
    )


def _log(request_id: Optional[str]):
    return get_request_logger('gemini', request_id) if request_id else logger


def _image_part(data_url: str) -> types.Part:
    data, mime_type = split_data_url(data_url)
    return types.Part.from_bytes(data=data, mime_type=mime_type)


def _extract_image(response) -> Optional[str]:
    """First inline image of the first candidate, as a data URL."""
    candidates = getattr(response, 'candidates', None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], 'content', None)
    for part in getattr(content, 'parts', None) or []:
        inline = getattr(part, 'inline_data', None)
        if inline and inline.data:
            return to_data_url(inline.data, inline.mime_type or 'image/png')
    return None


def _parse_json(text: str):
    """Parse a JSON response, tolerating a surrounding ```json fence."""
    text = text.strip()
    if text.startswith('```'):
        text = text.strip('`')
        if text.lower().startswith('json'):
            text = text[4:]
    return json.loads(text)


# ============ Story analysis ============

ANALYSIS_SCHEMA = {
    'type': 'OBJECT',
    'properties': {
        'chapters': {
            'type': 'ARRAY',
            'items': {
                'type': 'OBJECT',
                'properties': {
                    'title': {'type': 'STRING'},
                    'text': {'type': 'STRING'},
                },
                'required': ['title', 'text'],
            },
        },
        'characters': {
            'type': 'ARRAY',
            'items': {
                'type': 'OBJECT',
                'properties': {
                    'name': {'type': 'STRING'},
                    'description': {'type': 'STRING'},
                },
                'required': ['name', 'description'],
            },
        },
        'scenery': {
            'type': 'ARRAY',
            'items': {
                'type': 'OBJECT',
                'properties': {'description': {'type': 'STRING'}},
                'required': ['description'],
            },
        },
    },
    'required': ['chapters', 'characters', 'scenery'],
}


def analyze_full_story(story_text: str, request_id: str = None) -> dict:
    """
    Split a story into chapters and collect its characters and scenery.

    Returns:
        dict with 'chapters' (List[Chapter]), 'characters' (List[Character])
        and 'scenery' (List[Scenery]); new entities have no image yet.
    """
    log = _log(request_id)
    log.info(f"Analyzing story: {len(story_text)} chars")
    start_time = time.time()

    prompt = f"""You are a story editor preparing prose for a comic adaptation.
1. Split the story into chapters at shifts of place, time or major plot points. Give each a short title.
2. List every character with a consolidated visual and personality description an artist can use.
3. List every distinct setting with an atmospheric description.
Answer in the same language as the story.

Story:
\"\"\"
{story_text}
\"\"\""""

    def _call(api_key):
        client = _get_client(api_key)
        response = client.models.generate_content(
            model=TEXT_MODEL,
            contents=prompt,
            config=types.GenerateContentConfig(
                response_mime_type='application/json',
                response_schema=ANALYSIS_SCHEMA,
            )
        )
        text = (response.text or '').strip()
        if not text:
            raise BackendOperationError(
                'Analysis failed: empty response',
                'The request was blocked, possibly by a content safety filter. Please try modifying your story text.'
            )
        try:
            return _parse_json(text)
        except json.JSONDecodeError as e:
            raise BackendOperationError(
                f'Failed to parse story analysis: {e}',
                'The API returned an invalid format for the story analysis. Please try again.'
            )

    data = execute(_call, log=log)
    result = {
        'chapters': [Chapter(title=c['title'], text=c['text']) for c in data.get('chapters', [])],
        'characters': [Character(name=c['name'], description=c['description']) for c in data.get('characters', [])],
        'scenery': [Scenery(description=s['description']) for s in data.get('scenery', [])],
    }
    log.info(
        f"Analysis complete in {time.time() - start_time:.1f}s: {len(result['chapters'])} chapters, "
        f"{len(result['characters'])} characters, {len(result['scenery'])} scenery"
    )
    return result


# ============ Reference art ============

def generate_reference_image(
    description: str,
    entity_type: str,
    art_style: str,
    name: Optional[str] = None,
    placeholder_on_exhaustion: bool = True,
    request_id: str = None
) -> str:
    """
    Generate a character or scenery reference image (data URL).

    When every key is out of quota a placeholder card is returned instead,
    unless placeholder_on_exhaustion is False.
    """
    log = _log(request_id)
    if entity_type == 'character':
        prompt = (
            f'Full-body character reference for a comic book in this art style: "{art_style}". '
            f'Clear pose on a plain white background. Character "{name}": {description}'
        )
    elif entity_type == 'scenery':
        prompt = (
            f'Atmospheric establishing shot for a comic book, strictly in this art style: "{art_style}". '
            f'Scene: {description}. The scene must be empty, with no people or characters.'
        )
    else:
        raise ValueError(f'Unknown entity type: {entity_type}')

    def _call(api_key):
        client = _get_client(api_key)
        response = client.models.generate_images(
            model=REFERENCE_IMAGE_MODEL,
            prompt=prompt,
            config=types.GenerateImagesConfig(
                number_of_images=1,
                output_mime_type='image/png',
                aspect_ratio='1:1',
            )
        )
        generated = getattr(response, 'generated_images', None) or []
        if generated and generated[0].image and generated[0].image.image_bytes:
            return to_data_url(generated[0].image.image_bytes, 'image/png')
        raise BackendOperationError(
            'No reference image was generated',
            'The image generation was blocked, possibly by a content safety filter. Please try a different description.'
        )

    try:
        return execute(_call, log=log)
    except RateLimitExhaustedError:
        if not placeholder_on_exhaustion:
            raise
        log.warning(f"Quota exhausted, using placeholder for {entity_type} reference")
        return placeholder_data_url(PLACEHOLDER_LIMIT_TEXT)


def generate_character_sheet(character: Character, request_id: str = None) -> str:
    """Turn a character's reference image into a multi-view character sheet."""
    log = _log(request_id)
    if not character.image:
        raise BackendOperationError(
            f'Character {character.name} has no image',
            'Character has no image to generate a sheet from.'
        )

    prompt = f"""Use the provided image as a strict visual reference for the character "{character.name}".
Create one character sheet on a plain white background with a front view, a side view,
a back view and at least three facial expressions. Appearance, clothing, colors and art style
must match the reference exactly.
Character description: {character.description}"""

    def _call(api_key):
        client = _get_client(api_key)
        response = client.models.generate_content(
            model=IMAGE_MODEL,
            contents=[prompt, _image_part(character.image)],
            config=types.GenerateContentConfig(response_modalities=['IMAGE', 'TEXT'])
        )
        image = _extract_image(response)
        if not image:
            raise BackendOperationError(
                'No image was generated for the character sheet',
                'The character sheet generation was blocked, possibly by a content safety filter. '
                'Try using a different initial image.'
            )
        return image

    try:
        return execute(_call, log=log)
    except RateLimitExhaustedError:
        log.warning(f"Quota exhausted, using placeholder sheet for {character.name}")
        return placeholder_data_url(PLACEHOLDER_LIMIT_TEXT)


# ============ Chapter script ============

SCRIPT_SCHEMA = {
    'type': 'ARRAY',
    'items': {
        'type': 'OBJECT',
        'properties': {
            'page': {'type': 'INTEGER'},
            'description': {'type': 'STRING'},
            'narration': {'type': 'STRING'},
            'dialogue': {
                'type': 'ARRAY',
                'items': {
                    'type': 'OBJECT',
                    'properties': {
                        'character': {'type': 'STRING'},
                        'line': {'type': 'STRING'},
                    },
                    'required': ['character', 'line'],
                },
            },
            'layout': {'type': 'STRING', 'enum': list(LAYOUTS)},
            'sfx': {
                'type': 'OBJECT',
                'properties': {
                    'text': {'type': 'STRING'},
                    'style': {'type': 'STRING'},
                },
                'required': ['text', 'style'],
            },
        },
        'required': ['page', 'description', 'narration', 'dialogue', 'layout'],
    },
}

SCRIPT_SYSTEM_INSTRUCTION = (
    'You are an expert comic book writer. Translate prose into a visually compelling '
    'comic script with dynamic panel layouts and sound effects.'
)


def generate_story_script(chapter_text: str, request_id: str = None) -> List[Panel]:
    """
    Script a chapter into panels, sorted by page number.

    Raises:
        ScriptGenerationError: empty, unparsable or panel-less response
    """
    log = _log(request_id)
    log.info(f"Scripting chapter: {len(chapter_text)} chars")

    prompt = f"""Adapt this chapter into comic panels.
- Show, don't tell: turn prose and inner monologue into visuals with cinematic shots and angles.
- Take dialogue and narration from the text; do not invent plot.
- Carry each character's position and state from one panel to the next.
- Narration and dialogue must be in the chapter's language.
For each panel give: page (from 1), description, narration ("" if none), dialogue ([] if none),
layout (splash for big moments, wide for action, tall for entrances, standard otherwise)
and an sfx object only when a sound is clearly implied.

Chapter:
\"\"\"
{chapter_text}
\"\"\""""

    def _call(api_key):
        client = _get_client(api_key)
        response = client.models.generate_content(
            model=TEXT_MODEL,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=SCRIPT_SYSTEM_INSTRUCTION,
                response_mime_type='application/json',
                response_schema=SCRIPT_SCHEMA,
            )
        )
        text = (response.text or '').strip()
        if not text:
            raise ScriptGenerationError(
                'Script generation failed: empty response',
                'The story script generation was blocked, possibly by a content safety filter. '
                'Please try modifying the chapter text.'
            )
        try:
            items = _parse_json(text)
        except json.JSONDecodeError as e:
            raise ScriptGenerationError(
                f'Failed to parse script: {e}',
                'The API returned an invalid format for the story script. Please try again.'
            )
        if not isinstance(items, list) or not items:
            raise ScriptGenerationError(
                'Script contained no panels',
                'The API returned an empty story script. Please try again.'
            )
        return items

    items = execute(_call, log=log)
    try:
        panels = [Panel.from_dict(item) for item in items]
    except (TypeError, ValueError, KeyError, AttributeError) as e:
        raise ScriptGenerationError(
            f'Malformed panel in script: {e}',
            'The API returned an invalid format for the story script. Please try again.'
        )
    # The model does not always keep panels in order or number them 1..N
    panels.sort(key=lambda p: p.page)
    log.info(f"Script ready: {len(panels)} panels")
    return renumber_panels(panels)


# ============ Panel art ============

def _panel_prompt(panel: Panel, style: StyleConfig, full_story: str, has_previous: bool) -> str:
    continuity = ''
    if has_previous:
        continuity = """CONTINUITY (highest priority): the image of the immediately preceding panel is provided.
Keep characters' positions, clothing and expressions consistent with it, and keep the background,
lighting and object placement identical unless this panel's description says otherwise.
"""
    if panel.sfx and panel.sfx.text:
        sfx_text = (
            f'Render this sound effect prominently, integrated with the art: "{panel.sfx.text}" '
            f'in the style "{panel.sfx.style}".'
        )
    else:
        sfx_text = 'There are no sound effects in this panel.'

    return f"""You are a comic book artist. Generate one comic panel.
{continuity}
Treat the character and scenery reference images as exact blueprints: copy clothing, hairstyle,
colors and design with no deviation. Draw each character only once.
The image must NOT contain speech bubbles, narration boxes or dialogue text.

Inking style: "{style.inking_style}"
Coloring style: "{style.coloring_style}"

Story context:
\"\"\"
{full_story}
\"\"\"

This panel: {panel.description}
Aspect ratio: {LAYOUT_ASPECT_RATIOS.get(panel.layout, '1:1')}
{sfx_text}"""


def generate_panel_image(
    panel: Panel,
    characters: List[Character],
    scenery: List[Scenery],
    style: StyleConfig,
    full_story: str,
    previous_panel_image: Optional[str] = None,
    request_id: str = None
) -> str:
    """
    Render one panel (data URL), using the previous panel's image as a
    continuity reference when given.
    """
    log = _log(request_id)
    contents = []
    if previous_panel_image:
        contents.append('This is the image from the immediately preceding panel. Use it for visual consistency.')
        contents.append(_image_part(previous_panel_image))
    contents.append(_panel_prompt(panel, style, full_story, bool(previous_panel_image)))

    for character in characters:
        if character.image:
            contents.append(f'This is the character reference for {character.name}.')
            contents.append(_image_part(character.image))
    for i, scene in enumerate(scenery):
        if scene.image:
            contents.append(f'This is the scenery reference #{i + 1}: {scene.description}.')
            contents.append(_image_part(scene.image))

    def _call(api_key):
        client = _get_client(api_key)
        response = client.models.generate_content(
            model=IMAGE_MODEL,
            contents=contents,
            config=types.GenerateContentConfig(
                response_modalities=['IMAGE', 'TEXT'],
                image_config=types.ImageConfig(
                    aspect_ratio=LAYOUT_ASPECT_RATIOS.get(panel.layout, '1:1')
                )
            )
        )
        image = _extract_image(response)
        if not image:
            raise BackendOperationError(
                f'No image was generated for panel {panel.page}',
                'The panel generation was blocked, possibly by a content safety filter. '
                'Please try regenerating or modifying the story.'
            )
        return image

    start_time = time.time()
    image = execute(_call, log=log)
    log.debug(f"Panel {panel.page} rendered in {time.time() - start_time:.1f}s")
    return image


def edit_panel_image(image: str, instruction: str, request_id: str = None) -> str:
    """Apply one targeted, free-form edit to a panel image and keep everything else."""
    log = _log(request_id)
    prompt = f"""You are editing a comic book panel.
Keep the inking style, coloring, character designs and background exactly as they are.
Apply ONLY this change, blended seamlessly into the existing art:
\"\"\"
{instruction}
\"\"\"
Return only the edited image."""

    def _call(api_key):
        client = _get_client(api_key)
        response = client.models.generate_content(
            model=IMAGE_MODEL,
            contents=[prompt, _image_part(image)],
            config=types.GenerateContentConfig(response_modalities=['IMAGE'])
        )
        edited = _extract_image(response)
        if not edited:
            raise BackendOperationError(
                'No edited image was generated',
                'The image edit was blocked, possibly by a content safety filter. Please try a different edit prompt.'
            )
        return edited

    return execute(_call, log=log)


# ============ Lettering ============

LETTERING_SCHEMA = {
    'type': 'ARRAY',
    'items': {
        'type': 'OBJECT',
        'properties': {
            'type': {'type': 'STRING', 'enum': ['dialogue', 'narration', 'thought', 'shout']},
            'text': {'type': 'STRING'},
            'x': {'type': 'NUMBER'},
            'y': {'type': 'NUMBER'},
            'width': {'type': 'NUMBER'},
            'height': {'type': 'NUMBER'},
            'font_weight': {'type': 'STRING', 'enum': ['normal', 'bold']},
            'text_align': {'type': 'STRING', 'enum': ['left', 'center', 'right']},
            'font_family': {'type': 'STRING'},
            'font_size': {'type': 'NUMBER'},
            'color': {'type': 'STRING'},
            'fill_color': {'type': 'STRING'},
            'tail': {
                'type': 'OBJECT',
                'properties': {
                    'x': {'type': 'NUMBER'},
                    'y': {'type': 'NUMBER'},
                },
                'required': ['x', 'y'],
            },
        },
        'required': [
            'type', 'text', 'x', 'y', 'width', 'height', 'font_weight', 'text_align',
            'font_family', 'font_size', 'color', 'fill_color',
        ],
    },
}


def analyze_panel_for_lettering(panel: Panel, image: Optional[str] = None, request_id: str = None) -> List[LetteringElement]:
    """
    Place the panel's narration and dialogue over its image.

    Panels without text get an empty list without calling the API. An empty
    model response falls back to default placement.
    """
    log = _log(request_id)
    image = image or panel.image
    if not panel.has_text:
        return []
    if not image:
        raise BackendOperationError(f'Panel {panel.page} has no image to letter', 'The panel has no image yet.')

    dialogue = ''.join(f'\n  - {d.character}: "{d.line}"' for d in panel.dialogue)
    prompt = f"""You are a professional comic letterer. Place every text element on the provided panel.
Text:
- Narration: "{panel.narration}"
- Dialogue: {dialogue}

Rules:
- Use open space; never cover faces, hands or key action. Keep natural reading order.
- narration: rectangle, no tail, font 'Bangers', fill '#facc15', text '#000000'.
- dialogue: rounded box with tail, font 'Inter', fill '#FFFFFF', text '#000000'.
- thought: cloud with bubble tail, font 'Comic Neue', fill '#FFFFFF', text '#000000'.
- shout: jagged burst, font 'Luckiest Guy', bold, fill '#FFFFFF', text '#000000'.
- font_size is in vmin: about 1.5 for dialogue, 2 for narration, 2.5 for shouts.
- dialogue, thought and shout need a tail whose tip points at the speaker's mouth or head.
- x, y, width, height and tail coordinates are percentages (0-100) from the top-left."""

    def _call(api_key):
        client = _get_client(api_key)
        response = client.models.generate_content(
            model=TEXT_MODEL,
            contents=[prompt, _image_part(image)],
            config=types.GenerateContentConfig(
                response_mime_type='application/json',
                response_schema=LETTERING_SCHEMA,
            )
        )
        text = (response.text or '').strip()
        if not text:
            log.warning(f"Empty lettering response for panel {panel.page}, using default placement")
            return fallback_lettering(panel)
        try:
            return parse_lettering(_parse_json(text))
        except json.JSONDecodeError as e:
            raise BackendOperationError(
                f'Failed to parse lettering for panel {panel.page}: {e}',
                'The API returned an invalid format for lettering analysis. Please try regenerating the panel.'
            )

    return execute(_call, log=log)


# ============ Key status ============

def _probe_key(index: int, api_key: str) -> dict:
    identifier = f'API Key {index + 1}'
    try:
        client = _get_client(api_key, timeout=30)
        client.models.generate_content(
            model=TEXT_MODEL,
            contents='hello',
            config=types.GenerateContentConfig(
                thinking_config=types.ThinkingConfig(thinking_budget=0)
            )
        )
        return {'key': identifier, 'status': 'ok', 'message': 'Active'}
    except Exception as e:
        if is_rate_limit_error(e):
            message = 'Quota limit reached.'
        elif 'API key not valid' in str(e):
            message = 'Invalid API key.'
        else:
            message = str(e)[:100]
        return {'key': identifier, 'status': 'error', 'message': message}


def check_api_keys() -> List[dict]:
    """Probe every pooled key with a cheap call, bypassing rotation."""
    keys = get_key_pool().all()
    logger.info(f"Testing {len(keys)} API key(s)")
    with ThreadPoolExecutor(max_workers=min(KEY_TEST_WORKERS, len(keys)) or 1) as executor:
        return list(executor.map(lambda args: _probe_key(*args), enumerate(keys)))


