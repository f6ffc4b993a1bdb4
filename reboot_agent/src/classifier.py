from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from reboot_agent.src.config import AgentSettings


class AnnotationVerdict(Enum):
    REBOOT_REQUESTED = "reboot-requested"
    REBOOT_IN_PROGRESS = "reboot-in-progress"
    NONE = "none"


def classify_annotations(
    annotations: Mapping[str, str] | None, settings: AgentSettings
) -> AnnotationVerdict:
    """Decide what a pod's annotations ask for.

    The trigger annotation wins over the in-progress one when both are set.
    """
    if not annotations:
        return AnnotationVerdict.NONE
    if settings.trigger_annotation in annotations:
        return AnnotationVerdict.REBOOT_REQUESTED
    if settings.in_progress_annotation in annotations:
        return AnnotationVerdict.REBOOT_IN_PROGRESS
    return AnnotationVerdict.NONE
