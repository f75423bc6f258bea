"""
Lettering helpers
Default element styles, fallback placement and manual element edits
"""
from dataclasses import replace
from typing import List, Optional

from models import LetteringElement, Panel, Tail, LETTERING_TYPES

# Per-type styling used for new elements and for fallback placement
TYPE_STYLES = {
    'dialogue': {
        'text': 'New dialogue...',
        'font_family': 'Inter',
        'font_size': 1.5,
        'font_weight': 'normal',
        'fill_color': '#FFFFFF',
        'has_tail': True,
    },
    'narration': {
        'text': 'New narration...',
        'font_family': 'Bangers',
        'font_size': 2.0,
        'font_weight': 'bold',
        'fill_color': '#facc15',
        'has_tail': False,
    },
    'thought': {
        'text': 'New thought...',
        'font_family': 'Comic Neue',
        'font_size': 1.5,
        'font_weight': 'normal',
        'fill_color': '#FFFFFF',
        'has_tail': True,
    },
    'shout': {
        'text': 'NEW SHOUT!',
        'font_family': 'Luckiest Guy',
        'font_size': 2.5,
        'font_weight': 'bold',
        'fill_color': '#FFFFFF',
        'has_tail': True,
    },
}

EDITABLE_FIELDS = {
    'type', 'text', 'x', 'y', 'width', 'height', 'font_weight', 'text_align',
    'font_family', 'font_size', 'color', 'fill_color', 'tail',
}


class LetteringEditError(Exception):
    """Invalid manual lettering edit"""
    pass


class LetteringElementNotFound(LetteringEditError, LookupError):
    """No element with the given id on the panel"""
    pass


def new_element(element_type: str) -> LetteringElement:
    """Create a manually added element with the defaults for its type."""
    if element_type not in LETTERING_TYPES:
        raise LetteringEditError(f'Unknown lettering type: {element_type}')
    style = TYPE_STYLES[element_type]
    return LetteringElement(
        type=element_type,
        text=style['text'],
        x=25, y=25, width=50, height=20,
        font_weight=style['font_weight'],
        text_align='center',
        font_family=style['font_family'],
        font_size=style['font_size'],
        color='#000000',
        fill_color=style['fill_color'],
        tail=Tail(x=50, y=60) if style['has_tail'] else None,
    )


def fallback_lettering(panel: Panel) -> List[LetteringElement]:
    """
    Default placement used when the lettering model returns nothing:
    narration across the bottom, dialogue boxes stacked from the top.
    """
    elements = []
    if panel.narration:
        elements.append(LetteringElement(
            type='narration', text=panel.narration,
            x=5, y=80, width=90, height=15,
            font_weight='bold', text_align='center',
            font_family='Bangers', font_size=2.0,
            color='#000000', fill_color='#facc15',
        ))
    for i, line in enumerate(panel.dialogue):
        elements.append(LetteringElement(
            type='dialogue', text=line.line,
            x=10, y=10 + i * 15, width=80, height=12,
            font_weight='normal', text_align='left',
            font_family='Inter', font_size=1.5,
            color='#000000', fill_color='#FFFFFF',
            tail=Tail(x=50, y=50),
        ))
    return elements


def parse_lettering(items: list) -> List[LetteringElement]:
    """Turn the model's JSON list into elements with fresh ids, skipping unknown types."""
    elements = []
    for item in items or []:
        if not isinstance(item, dict) or item.get('type') not in LETTERING_TYPES:
            continue
        item = {k: v for k, v in item.items() if k != 'id'}
        elements.append(LetteringElement.from_dict(item))
    return elements


def add_element(panel: Panel, element_type: str) -> Panel:
    element = new_element(element_type)
    return replace(panel, lettering=list(panel.lettering or []) + [element])


def update_element(panel: Panel, element_id: str, updates: dict) -> Panel:
    """Apply a partial update to one element; unknown fields are rejected."""
    unknown = set(updates) - EDITABLE_FIELDS
    if unknown:
        raise LetteringEditError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
    if 'type' in updates and updates['type'] not in LETTERING_TYPES:
        raise LetteringEditError(f"Unknown lettering type: {updates['type']}")

    elements = list(panel.lettering or [])
    for i, element in enumerate(elements):
        if element.id == element_id:
            changes = dict(updates)
            if 'tail' in changes:
                tail = changes['tail']
                try:
                    changes['tail'] = Tail(x=float(tail['x']), y=float(tail['y'])) if tail else None
                except (KeyError, TypeError, ValueError):
                    raise LetteringEditError(f'Invalid tail: {tail!r}')
            elements[i] = replace(element, **changes)
            return replace(panel, lettering=elements)
    raise LetteringElementNotFound(f'Lettering element not found: {element_id}')


def delete_element(panel: Panel, element_id: str) -> Panel:
    elements = [el for el in (panel.lettering or []) if el.id != element_id]
    if len(elements) == len(panel.lettering or []):
        raise LetteringElementNotFound(f'Lettering element not found: {element_id}')
    return replace(panel, lettering=elements)


def find_element(panel: Panel, element_id: str) -> Optional[LetteringElement]:
    for element in panel.lettering or []:
        if element.id == element_id:
            return element
    return None
