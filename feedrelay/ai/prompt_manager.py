"""
Prompt Manager
==============

Loads system prompts from the prompts directory and builds the per-item
user message sent alongside them.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..database.models import CandidateItem, Item
from ..utils.exceptions import AIError, ErrorCode
from ..utils.logging import get_logger_for_component
from ..utils.validators import detect_language


DEFAULT_SYSTEM_PROMPT = """You are a news editor preparing short digests for a messaging channel.

You receive a JSON object with the fields article_title, article_text and
article_language. Read the article and respond with a single JSON object:

{
  "headline": "rewritten headline, at most 120 characters",
  "summary": "2-4 sentence factual summary, at most 700 characters",
  "category": "one broad topic such as technology, politics, economy, science",
  "importance": 1-10
}

Write headline and summary in the article language. Do not add facts that
are not in the article. Respond with JSON only."""

_UNSAFE_ID = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class PromptSpec:
    """Everything the completion capability needs for one request."""

    purpose: str
    system_prompt: str
    user_message: str
    prompt_id: str = "default"
    language: Optional[str] = None


class PromptManager:
    """File-backed system prompts with an in-memory cache."""

    def __init__(self, prompts_dir: str = "prompts", purpose: str = "summary"):
        self.prompts_dir = Path(prompts_dir)
        self.purpose = purpose
        self._cache: Dict[str, str] = {}
        self.logger = get_logger_for_component("prompt_manager")

    @staticmethod
    def sanitize_id(prompt_id: str) -> str:
        return _UNSAFE_ID.sub("", prompt_id or "")

    def _path_for(self, prompt_id: str) -> Path:
        return self.prompts_dir / f"{self.sanitize_id(prompt_id)}.txt"

    def has_prompt(self, prompt_id: str) -> bool:
        return self._path_for(prompt_id).is_file()

    def list_prompts(self) -> List[str]:
        if not self.prompts_dir.is_dir():
            return []
        return sorted(path.stem for path in self.prompts_dir.glob("*.txt"))

    def get_system_prompt(self, prompt_id: str) -> str:
        """Return the system prompt for prompt_id.

        Raises:
            AIError: If no prompt file exists and prompt_id is not 'default'
        """
        safe_id = self.sanitize_id(prompt_id)
        if safe_id in self._cache:
            return self._cache[safe_id]

        path = self._path_for(safe_id)
        if path.is_file():
            content = path.read_text(encoding="utf-8").strip()
            self.logger.debug(f"Loaded prompt '{safe_id}' from {path} ({len(content)} chars)")
        elif safe_id == "default":
            content = DEFAULT_SYSTEM_PROMPT
        else:
            raise AIError(
                f"Prompt file not found: {path}",
                error_code=ErrorCode.AI_PROMPT_MISSING,
                recoverable=False,
            )

        self._cache[safe_id] = content
        return content

    def build_user_message(self, item: Union[Item, CandidateItem], language: str) -> str:
        payload = {
            "article_title": item.title,
            "article_text": item.text_for_analysis(),
            "article_language": language,
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)

    def build(self, prompt_id: str, item: Union[Item, CandidateItem]) -> PromptSpec:
        """Assemble system prompt and user message for one item."""
        language = detect_language(f"{item.title} {item.text_for_analysis()}")
        return PromptSpec(
            purpose=self.purpose,
            system_prompt=self.get_system_prompt(prompt_id),
            user_message=self.build_user_message(item, language),
            prompt_id=self.sanitize_id(prompt_id),
            language=language,
        )
