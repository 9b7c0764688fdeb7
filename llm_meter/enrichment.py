"""
Best-effort call enrichment from the Python stack.

Nothing here is needed for correct metering. Every function returns empty
data rather than raising, so a surprising stack never breaks a call.
"""
import logging
import os
import re
import sys
from typing import List, Optional

from .models import CallSite

logger = logging.getLogger(__name__)

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))

_SKIP_PATH_PARTS = (
    os.sep + "asyncio" + os.sep,
    "site-packages",
    "dist-packages",
    "<frozen",
)

_AGENT_PATTERNS = [
    re.compile(r"^(\w+Agent)$"),
    re.compile(r"^(\w+Handler)$"),
    re.compile(r"^(\w+Service)$"),
    re.compile(r"^(\w+Controller)$"),
    re.compile(r"^(handle\w+)$"),
    re.compile(r"^(process\w+)$"),
    re.compile(r"^(run\w+)$"),
    re.compile(r"^(execute\w+)$"),
]


def _is_application_frame(filename: str) -> bool:
    if os.path.abspath(filename).startswith(_PACKAGE_DIR):
        return False
    return not any(part in filename for part in _SKIP_PATH_PARTS)


def _application_frames(max_frames: int):
    try:
        frame = sys._getframe(1)
    except ValueError:
        return
    seen = 0
    while frame is not None and seen < max_frames:
        if _is_application_frame(frame.f_code.co_filename):
            seen += 1
            yield frame
        frame = frame.f_back


def capture_call_site() -> Optional[CallSite]:
    """Location of the innermost application frame, or None."""
    try:
        for frame in _application_frames(1):
            return CallSite(
                file=frame.f_code.co_filename,
                line=frame.f_lineno,
                function=frame.f_code.co_name,
            )
    except Exception:
        logger.debug("Call site capture failed", exc_info=True)
    return None


def capture_call_stack(max_frames: int = 10) -> List[str]:
    """Application frames as "file:line:function", innermost first."""
    try:
        return [
            f"{frame.f_code.co_filename}:{frame.f_lineno}:{frame.f_code.co_name}"
            for frame in _application_frames(max_frames)
        ]
    except Exception:
        logger.debug("Call stack capture failed", exc_info=True)
        return []


def _frame_names(frame) -> List[str]:
    names = [frame.f_code.co_name]
    owner = frame.f_locals.get("self")
    if owner is not None:
        names.insert(0, type(owner).__name__)
    return names


def infer_agents(max_frames: int = 30) -> List[str]:
    """
    Guess agent names from class and function names on the stack.

    Returns outermost first, without duplicates.
    """
    agents: List[str] = []
    try:
        for frame in _application_frames(max_frames):
            for name in _frame_names(frame):
                for pattern in _AGENT_PATTERNS:
                    match = pattern.match(name)
                    if match and match.group(1) not in agents:
                        agents.append(match.group(1))
                        break
    except Exception:
        logger.debug("Agent inference failed", exc_info=True)
        return []
    agents.reverse()
    return agents
