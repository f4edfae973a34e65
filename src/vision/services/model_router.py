"""Routing helpers for selecting the model that serves each purpose.

The router does not touch the SDK; it only resolves a model name from a
static policy plus environment overrides, which keeps the selection policy
unit-testable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set


@dataclass(frozen=True)
class ModelSelection:
    """Returned details about the model that should handle a task."""

    purpose: str
    model: str


class UnknownModelError(ValueError):
    pass


class ModelRouter:
    """Purpose -> model policy, each entry overridable by env."""

    PURPOSE_CONFIG: Dict[str, Dict[str, str]] = {
        "research": {"model_env": "VISION_RESEARCH_MODEL", "default_model": "gemini-3-pro-preview"},
        "image": {"model_env": "VISION_IMAGE_MODEL", "default_model": "gemini-3-pro-image-preview"},
        "edit": {"model_env": "VISION_EDIT_MODEL", "default_model": "gemini-3-pro-image-preview"},
        # Text plus reference images
        "compose": {"model_env": "VISION_COMPOSE_MODEL", "default_model": "gemini-2.5-flash-image"},
        "title": {"model_env": "VISION_TITLE_MODEL", "default_model": "gemini-2.0-flash"},
        "transcribe": {"model_env": "VISION_TRANSCRIBE_MODEL", "default_model": "gemini-2.0-flash"},
        "refine": {"model_env": "VISION_REFINE_MODEL", "default_model": "gemini-2.0-flash"},
        "analyze": {"model_env": "VISION_ANALYZE_MODEL", "default_model": "gemini-2.0-flash"},
    }

    CHAT_SELECTORS: Dict[str, Dict[str, str]] = {
        "light": {"model_env": "VISION_CHAT_LIGHT_MODEL", "default_model": "gemini-3-flash-preview"},
        "pro": {"model_env": "VISION_CHAT_PRO_MODEL", "default_model": "gemini-3-pro-preview"},
    }

    def __init__(
        self,
        env: Optional[Dict[str, str]] = None,
        allowed_chat_models: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        extra = allowed_chat_models
        if extra is None:
            raw = self._env.get("VISION_CHAT_ALLOWED_MODELS") or ""
            extra = [m for m in raw.split(",")]
        self._allowed_chat: Set[str] = {m.strip() for m in extra if m and m.strip()}

    def _resolve(self, cfg: Dict[str, str]) -> str:
        return (self._env.get(cfg["model_env"]) or "").strip() or cfg["default_model"]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def select(self, purpose: str) -> ModelSelection:
        cfg = self.PURPOSE_CONFIG.get(purpose)
        if cfg is None:
            raise UnknownModelError(f"Unknown model purpose: {purpose}")
        return ModelSelection(purpose=purpose, model=self._resolve(cfg))

    def select_chat(self, selector: Optional[str]) -> ModelSelection:
        """Resolve a chat selector (``light`` | ``pro`` | allowed model name).

        Raises
        ------
        UnknownModelError
            If the selector is neither a known tier nor an allowed model.
        """

        key = (selector or "light").strip()
        cfg = self.CHAT_SELECTORS.get(key.lower())
        if cfg is not None:
            return ModelSelection(purpose="chat", model=self._resolve(cfg))
        known = {self._resolve(c) for c in self.CHAT_SELECTORS.values()} | self._allowed_chat
        if key in known:
            return ModelSelection(purpose="chat", model=key)
        raise UnknownModelError(f"Unsupported chat model: {key}")
