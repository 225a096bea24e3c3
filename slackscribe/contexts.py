from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


@dataclass
class FrameContexts:
    default: Optional[int] = None
    isolated: Optional[int] = None
    other: List[int] = field(default_factory=list)

    def is_empty(self) -> bool:
        return self.default is None and self.isolated is None and not self.other


class ExecutionContextRegistry:
    """
    Tracks Runtime execution contexts per frame so page scripts can be
    evaluated in the right JavaScript world.

    Fed from Runtime.executionContextCreated / executionContextDestroyed /
    executionContextsCleared notifications.
    """

    def __init__(self):
        self.frames: Dict[str, FrameContexts] = {}
        self.frame_by_context: Dict[int, Optional[str]] = {}
        self.default_context_id: Optional[int] = None

    def on_created(self, params: Mapping[str, Any]) -> None:
        context = params.get("context") if isinstance(params, Mapping) else None
        if not isinstance(context, Mapping):
            return
        context_id = context.get("id")
        if not isinstance(context_id, int) or isinstance(context_id, bool):
            return

        aux = context.get("auxData") or {}
        frame_id = aux.get("frameId") or None
        ctx_type = aux.get("type")
        is_default = bool(aux.get("isDefault")) or ctx_type == "default"

        if frame_id:
            info = self.frames.setdefault(frame_id, FrameContexts())
            if is_default:
                info.default = context_id
                self.default_context_id = context_id
            elif ctx_type == "isolated":
                info.isolated = context_id
            elif context_id not in info.other:
                info.other.append(context_id)
        elif is_default:
            self.default_context_id = context_id
        self.frame_by_context[context_id] = frame_id

    def on_destroyed(self, params: Mapping[str, Any]) -> None:
        context_id = params.get("executionContextId") if isinstance(params, Mapping) else None
        if not isinstance(context_id, int) or isinstance(context_id, bool):
            return

        frame_id = self.frame_by_context.pop(context_id, None)
        if frame_id and frame_id in self.frames:
            info = self.frames[frame_id]
            if info.default == context_id:
                info.default = None
            if info.isolated == context_id:
                info.isolated = None
            info.other = [c for c in info.other if c != context_id]
            if info.is_empty():
                del self.frames[frame_id]
        if self.default_context_id == context_id:
            self.default_context_id = None

    def clear(self) -> None:
        self.frames.clear()
        self.frame_by_context.clear()
        self.default_context_id = None

    def resolve(self, frame_id: Optional[str] = None) -> List[Optional[int]]:
        """
        Evaluation order: frame default, frame isolated, frame others, global
        default, then None (let the protocol pick).
        """
        result: List[Optional[int]] = []
        info = self.frames.get(frame_id) if frame_id else None
        if info is not None:
            for cid in [info.default, info.isolated, *info.other]:
                if cid is not None and cid not in result:
                    result.append(cid)
        if self.default_context_id is not None and self.default_context_id not in result:
            result.append(self.default_context_id)
        result.append(None)
        return result
