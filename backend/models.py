"""
Comic data model
Projects, characters, scenery, panels and lettering elements
"""
import time
import uuid
from dataclasses import dataclass, field, asdict, replace
from typing import Optional, List, Dict, Any

LAYOUTS = ('standard', 'wide', 'tall', 'splash')
LETTERING_TYPES = ('dialogue', 'narration', 'thought', 'shout')
STAGES = ('story-input', 'identification', 'character-sheets', 'chapter-selection', 'story-panels')

DEFAULT_INKING_STYLE = 'Clean, sharp digital line art'
DEFAULT_COLORING_STYLE = 'Vibrant, cel-shaded colors with minimal gradients'

CANCELLED_REASON = 'Generation was cancelled.'


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Tail:
    """Tip of a speech tail, in percent of the panel."""
    x: float
    y: float


@dataclass
class LetteringElement:
    """A positioned text box (speech, thought, narration, shout) over a panel image."""
    type: str
    text: str
    x: float
    y: float
    width: float
    height: float
    font_weight: str = 'normal'
    text_align: str = 'center'
    font_family: str = 'Inter'
    font_size: float = 1.5
    color: str = '#000000'
    fill_color: str = '#FFFFFF'
    tail: Optional[Tail] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.tail is None:
            data.pop('tail')
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'LetteringElement':
        data = dict(data)
        tail = data.pop('tail', None)
        if not data.get('id'):
            data.pop('id', None)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        element = cls(**known)
        if tail:
            element.tail = Tail(x=float(tail['x']), y=float(tail['y']))
        return element


@dataclass
class DialogueLine:
    character: str
    line: str


@dataclass
class SoundEffect:
    text: str
    style: str


@dataclass
class Panel:
    """
    One comic panel and its generation state.

    State flags follow the generation lifecycle:
    pending -> generating-image -> (image-ready -> lettering -> complete) | failed
    """
    page: int
    description: str
    narration: str = ''
    dialogue: List[DialogueLine] = field(default_factory=list)
    layout: str = 'standard'
    sfx: Optional[SoundEffect] = None
    image: Optional[str] = None
    lettering: Optional[List[LetteringElement]] = None
    is_generating: bool = False
    is_lettering: bool = False
    generation_failed: bool = False
    failure_reason: Optional[str] = None

    @property
    def state(self) -> str:
        if self.generation_failed:
            return 'failed'
        if self.is_generating:
            return 'generating-image'
        if self.image is None:
            return 'pending'
        if self.is_lettering:
            return 'lettering'
        if self.lettering is None:
            return 'image-ready'
        return 'complete'

    @property
    def has_text(self) -> bool:
        return bool(self.narration) or bool(self.dialogue)

    def to_dict(self) -> dict:
        return {
            'page': self.page,
            'description': self.description,
            'narration': self.narration,
            'dialogue': [asdict(d) for d in self.dialogue],
            'layout': self.layout,
            'sfx': asdict(self.sfx) if self.sfx else None,
            'image': self.image,
            'lettering': [el.to_dict() for el in self.lettering] if self.lettering is not None else None,
            'is_generating': self.is_generating,
            'is_lettering': self.is_lettering,
            'generation_failed': self.generation_failed,
            'failure_reason': self.failure_reason,
            'state': self.state,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Panel':
        layout = data.get('layout') or 'standard'
        if layout not in LAYOUTS:
            layout = 'standard'
        sfx = data.get('sfx')
        lettering = data.get('lettering')
        return cls(
            page=int(data.get('page', 0)),
            description=data.get('description', ''),
            narration=data.get('narration') or '',
            dialogue=[
                DialogueLine(character=d.get('character', ''), line=d.get('line', ''))
                for d in (data.get('dialogue') or [])
            ],
            layout=layout,
            sfx=SoundEffect(text=sfx['text'], style=sfx.get('style', '')) if sfx and sfx.get('text') else None,
            image=data.get('image'),
            lettering=[LetteringElement.from_dict(el) for el in lettering] if lettering is not None else None,
            is_generating=bool(data.get('is_generating', False)),
            is_lettering=bool(data.get('is_lettering', False)),
            generation_failed=bool(data.get('generation_failed', False)),
            failure_reason=data.get('failure_reason'),
        )


@dataclass
class Character:
    name: str
    description: str
    image: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    def touch(self):
        self.updated_at = _now_ms()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'Character':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
        known.setdefault('image', None)
        return cls(**known)


@dataclass
class Scenery:
    description: str
    image: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'Scenery':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
        return cls(**known)


@dataclass
class Chapter:
    title: str
    text: str


@dataclass
class StyleConfig:
    """Art direction passed to every panel image call."""
    inking_style: str = DEFAULT_INKING_STYLE
    coloring_style: str = DEFAULT_COLORING_STYLE


@dataclass
class Project:
    title: str = 'Untitled Comic'
    story_text: str = ''
    chapters: List[Chapter] = field(default_factory=list)
    characters: List[Character] = field(default_factory=list)
    scenery: List[Scenery] = field(default_factory=list)
    story_pages: List[Panel] = field(default_factory=list)
    inking_style: str = DEFAULT_INKING_STYLE
    coloring_style: str = DEFAULT_COLORING_STYLE
    stage: str = 'story-input'
    generate_detailed_sheets: bool = True
    generated_from_chapter_title: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    @property
    def style(self) -> StyleConfig:
        return StyleConfig(inking_style=self.inking_style, coloring_style=self.coloring_style)

    def touch(self):
        self.updated_at = _now_ms()

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'story_text': self.story_text,
            'chapters': [asdict(c) for c in self.chapters],
            'characters': [c.to_dict() for c in self.characters],
            'scenery': [s.to_dict() for s in self.scenery],
            'story_pages': [p.to_dict() for p in self.story_pages],
            'inking_style': self.inking_style,
            'coloring_style': self.coloring_style,
            'stage': self.stage,
            'generate_detailed_sheets': self.generate_detailed_sheets,
            'generated_from_chapter_title': self.generated_from_chapter_title,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Project':
        stage = data.get('stage') or 'story-input'
        project = cls(
            title=data.get('title') or 'Untitled Comic',
            story_text=data.get('story_text') or '',
            chapters=[Chapter(title=c['title'], text=c['text']) for c in (data.get('chapters') or [])],
            characters=[Character.from_dict(c) for c in (data.get('characters') or [])],
            scenery=[Scenery.from_dict(s) for s in (data.get('scenery') or [])],
            story_pages=[Panel.from_dict(p) for p in (data.get('story_pages') or [])],
            inking_style=data.get('inking_style') or DEFAULT_INKING_STYLE,
            coloring_style=data.get('coloring_style') or DEFAULT_COLORING_STYLE,
            stage=stage if stage in STAGES else 'story-input',
            generate_detailed_sheets=bool(data.get('generate_detailed_sheets', True)),
            generated_from_chapter_title=data.get('generated_from_chapter_title'),
        )
        if data.get('id'):
            project.id = data['id']
        if data.get('created_at'):
            project.created_at = int(data['created_at'])
        if data.get('updated_at'):
            project.updated_at = int(data['updated_at'])
        return project


def renumber_panels(panels: List[Panel]) -> List[Panel]:
    """Return copies of the panels numbered 1..N in their current order."""
    return [replace(panel, page=i + 1) for i, panel in enumerate(panels)]


def reorder_panels(panels: List[Panel], from_index: int, to_index: int) -> List[Panel]:
    """Move one panel and renumber the whole sequence."""
    if not (0 <= from_index < len(panels)) or not (0 <= to_index < len(panels)):
        raise IndexError(f'Panel index out of range: {from_index} -> {to_index} (of {len(panels)})')
    moved = list(panels)
    panel = moved.pop(from_index)
    moved.insert(to_index, panel)
    return renumber_panels(moved)
