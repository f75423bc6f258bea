"""
Comic Generation Pipeline
Script -> sequential panel art (each panel continues the previous one) ->
parallel lettering, plus single-panel regenerate and edit.

The panel image stage is strictly sequential: panel i+1 is only started
after panel i has finished, because its prompt carries panel i's image as
the continuity reference. Lettering has no such dependency and fans out on
a thread pool.
"""
import os
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional
from concurrent.futures import ThreadPoolExecutor, as_completed

from logging_config import get_logger, get_request_logger
from gemini_executor import GeminiServiceError
from gemini_service import (
    generate_story_script, generate_panel_image, analyze_panel_for_lettering,
    edit_panel_image
)
from models import Panel, Character, Scenery, StyleConfig, LetteringElement, CANCELLED_REASON, renumber_panels

logger = get_logger('pipeline')

LETTERING_WORKERS = int(os.getenv('LETTERING_WORKERS', '8'))
UNKNOWN_FAILURE_REASON = 'An unknown error occurred.'

# ProgressObserver: (stage: str, panels: List[Panel]) -> None
ProgressObserver = Callable[[str, List[Panel]], None]

# PanelObserver: (panel: Panel) -> None
PanelObserver = Callable[[Panel], None]


class PanelGenerationError(GeminiServiceError):
    """Image generation failed for one panel"""

    def __init__(self, page: int, cause: BaseException):
        user_message = getattr(cause, 'user_message', None) or UNKNOWN_FAILURE_REASON
        super().__init__(f'Panel {page} image failed: {cause}', user_message)
        self.page = page


class LetteringAnalysisError(GeminiServiceError):
    """Lettering analysis failed for one panel"""

    def __init__(self, page: int, cause: BaseException):
        user_message = getattr(cause, 'user_message', None) or UNKNOWN_FAILURE_REASON
        super().__init__(f'Panel {page} lettering failed: {cause}', user_message)
        self.page = page


class PanelEditError(GeminiServiceError):
    """A guided edit could not be applied"""
    pass


@dataclass
class GenerationJob:
    """
    Working state of one generate_chapter run.

    The job owns the panel list. Every transition builds a new list with a
    replaced panel, so snapshots handed to observers never change under them.
    """
    panels: List[Panel]
    cancel_flag: Optional[object] = None
    current_index: int = 0
    started_at: float = field(default_factory=time.time)

    def is_cancelled(self) -> bool:
        return self.cancel_flag is not None and self.cancel_flag.is_set()

    def update(self, index: int, **changes):
        self.panels = [replace(p, **changes) if i == index else p for i, p in enumerate(self.panels)]

    def snapshot(self) -> List[Panel]:
        return list(self.panels)


def _notify(observer: Optional[ProgressObserver], stage: str, job: GenerationJob, log):
    if observer is None:
        return
    try:
        observer(stage, job.snapshot())
    except Exception as e:
        # An observer error never aborts the run
        log.error(f"Progress observer failed at stage {stage}: {e}", exc_info=True)


def _cancel_from(job: GenerationJob, start: int, observer, log) -> List[Panel]:
    """Fail panels from `start` on as cancelled; rendered panels stop waiting for lettering."""
    for j, panel in enumerate(job.panels):
        if j >= start:
            job.update(j, is_generating=False, is_lettering=False,
                       generation_failed=True, failure_reason=CANCELLED_REASON)
        elif panel.is_lettering:
            job.update(j, is_lettering=False)
    _notify(observer, 'cancelled', job, log)
    return job.snapshot()


def _letter_panel(index: int, panel: Panel, request_id: Optional[str]):
    """Run lettering for one panel, returning (index, lettering, error)."""
    try:
        return index, analyze_panel_for_lettering(panel, request_id=request_id), None
    except Exception as e:
        return index, None, LetteringAnalysisError(panel.page, e)


def generate_chapter(
    chapter_text: str,
    characters: List[Character],
    scenery: List[Scenery],
    style: StyleConfig,
    full_story_text: str,
    observer: Optional[ProgressObserver] = None,
    cancel_flag=None,
    request_id: str = None,
    lettering_workers: int = LETTERING_WORKERS
) -> List[Panel]:
    """
    Produce a fully illustrated and lettered chapter.

    Args:
        chapter_text: Prose of the chapter to adapt
        characters: Characters whose images are used as references
        scenery: Settings whose images are used as references
        style: Inking and coloring direction
        full_story_text: Whole story, for tone
        observer: Called as observer(stage, panels) after every state change;
            stages are 'script', 'panel', 'cancelled' and 'lettering'
        cancel_flag: Anything with is_set(); polled before each panel image
        request_id: Id stamped on log records
        lettering_workers: Max concurrent lettering calls

    Returns:
        Panels ordered by page. Failed panels carry generation_failed and a
        failure_reason; on cancellation the unstarted panels are failed with
        CANCELLED_REASON and no lettering is run.

    Raises:
        ScriptGenerationError / GeminiServiceError: the script stage failed
    """
    log = get_request_logger('pipeline', request_id) if request_id else logger
    start_time = time.time()

    # STEP 1: Script (a failure here aborts the chapter)
    script = generate_story_script(chapter_text, request_id=request_id)
    job = GenerationJob(
        panels=[
            replace(p, is_generating=True, is_lettering=False, image=None, lettering=None,
                    generation_failed=False, failure_reason=None)
            for p in renumber_panels(sorted(script, key=lambda panel: panel.page))
        ],
        cancel_flag=cancel_flag,
    )
    total = len(job.panels)
    log.info(f"Script ready: {total} panels")
    _notify(observer, 'script', job, log)

    # STEP 2: Panel art, one at a time, each continuing from the previous panel
    for i in range(total):
        job.current_index = i
        if job.is_cancelled():
            log.info(f"Generation cancelled before panel {i + 1}/{total}")
            return _cancel_from(job, i, observer, log)

        panel = job.panels[i]
        previous_image = job.panels[i - 1].image if i > 0 else None
        try:
            image = generate_panel_image(
                panel, characters, scenery, style, full_story_text,
                previous_panel_image=previous_image,
                request_id=request_id
            )
            job.update(i, image=image, is_generating=False, is_lettering=True)
            log.info(f"Panel {i + 1}/{total} rendered")
        except Exception as e:
            failure = PanelGenerationError(panel.page, e)
            log.error(f"Panel {i + 1}/{total} failed: {e}")
            job.update(i, image=None, is_generating=False, is_lettering=False,
                       generation_failed=True, failure_reason=failure.user_message)
        _notify(observer, 'panel', job, log)

    # A cancel raised during the last image call still skips lettering
    if job.is_cancelled():
        log.info("Generation cancelled before lettering")
        return _cancel_from(job, total, observer, log)

    # STEP 3: Lettering for every rendered panel, in parallel
    targets = [(i, p) for i, p in enumerate(job.panels) if p.image and not p.generation_failed]
    if targets:
        results = {}
        workers = max(1, min(lettering_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_letter_panel, i, p, request_id) for i, p in targets]
            for future in as_completed(futures):
                index, lettering, error = future.result()
                if error is not None:
                    log.error(f"Lettering failed for panel {index + 1}: {error}")
                results[index] = lettering

        # Merge by panel index; completion order does not matter
        for index, _ in targets:
            job.update(index, lettering=results.get(index), is_lettering=False)
        _notify(observer, 'lettering', job, log)

    failed = sum(1 for p in job.panels if p.generation_failed)
    log.info(f"Chapter complete in {time.time() - start_time:.1f}s: {total - failed}/{total} panels rendered")
    return job.snapshot()


def _emit(on_update: Optional[PanelObserver], panel: Panel, log):
    if on_update is None:
        return
    try:
        on_update(panel)
    except Exception as e:
        log.error(f"Panel observer failed: {e}", exc_info=True)


def _letter_single(panel: Panel, log, request_id) -> Optional[List[LetteringElement]]:
    try:
        return analyze_panel_for_lettering(panel, request_id=request_id)
    except Exception as e:
        log.error(f"Lettering failed for panel {panel.page}: {e}")
        return None


def regenerate_panel(
    panel: Panel,
    preceding_image: Optional[str],
    characters: List[Character],
    scenery: List[Scenery],
    style: StyleConfig,
    full_story_text: str,
    on_update: Optional[PanelObserver] = None,
    request_id: str = None
) -> Panel:
    """
    Re-render one panel and re-letter it.

    Clears any previous failure, image and lettering first. An image failure
    returns the panel marked failed; a lettering failure keeps the new image
    with lettering left empty.
    """
    log = get_request_logger('pipeline', request_id) if request_id else logger
    working = replace(panel, image=None, lettering=None, is_generating=True, is_lettering=False,
                      generation_failed=False, failure_reason=None)
    _emit(on_update, working, log)

    try:
        image = generate_panel_image(
            working, characters, scenery, style, full_story_text,
            previous_panel_image=preceding_image,
            request_id=request_id
        )
    except Exception as e:
        failure = PanelGenerationError(panel.page, e)
        log.error(f"Regenerating panel {panel.page} failed: {e}")
        failed = replace(working, is_generating=False, generation_failed=True,
                         failure_reason=failure.user_message)
        _emit(on_update, failed, log)
        return failed

    working = replace(working, image=image, is_generating=False, is_lettering=True)
    _emit(on_update, working, log)

    lettering = _letter_single(working, log, request_id)
    done = replace(working, lettering=lettering, is_lettering=False)
    _emit(on_update, done, log)
    log.info(f"Panel {panel.page} regenerated")
    return done


def edit_panel(
    panel: Panel,
    instruction: str,
    on_update: Optional[PanelObserver] = None,
    request_id: str = None
) -> Panel:
    """
    Apply a guided edit to a panel's image, then re-letter it.

    Only image and lettering change. If the edit fails the original panel is
    left as it was and PanelEditError is raised.
    """
    log = get_request_logger('pipeline', request_id) if request_id else logger
    if not panel.image:
        raise PanelEditError(f'Panel {panel.page} has no image to edit', 'This panel has no image to edit yet.')
    if not instruction or not instruction.strip():
        raise PanelEditError('Empty edit instruction', 'Please describe the change you want.')

    _emit(on_update, replace(panel, is_generating=True), log)
    try:
        edited = edit_panel_image(panel.image, instruction.strip(), request_id=request_id)
    except Exception as e:
        log.error(f"Editing panel {panel.page} failed: {e}")
        _emit(on_update, panel, log)
        user_message = getattr(e, 'user_message', None) or 'An unexpected error occurred while editing the panel.'
        raise PanelEditError(f'Panel {panel.page} edit failed: {e}', user_message) from e

    working = replace(panel, image=edited, lettering=None, is_generating=False, is_lettering=True,
                      generation_failed=False, failure_reason=None)
    _emit(on_update, working, log)

    lettering = _letter_single(working, log, request_id)
    done = replace(working, lettering=lettering, is_lettering=False)
    _emit(on_update, done, log)
    log.info(f"Panel {panel.page} edited")
    return done
