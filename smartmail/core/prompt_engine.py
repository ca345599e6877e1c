"""
Prompt engine with a Jinja2 template system.

Templates are embedded so the package has no file dependencies; a
directory of overrides (*.j2, *.jinja2, *.txt) can replace any of them by
name.
"""

import logging
import os
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError

from .models import CATEGORIES

logger = logging.getLogger(__name__)


class PromptEngine:
    """
    Template-based prompt builder.

    Usage:
        engine = PromptEngine()
        prompt = engine.render_classify(subject, sender, snippet)
    """

    DEFAULT_TEMPLATES = {
        "classify": """You are an advanced email analyzer. Analyze this email and return a JSON response with the following fields:
- purpose: Brief purpose of the email (max 50 chars)
- category: One of these exact categories: {{ categories | join(', ') }}
- summary: 1-sentence summary (max 100 chars)
- sentiment: positive, negative, or neutral
- suggestedLabel: Clean label name for Gmail (max {{ label_max_length }} chars)

Email Details:
Subject: {{ subject }}
From: {{ sender }}
Snippet: {{ snippet }}

Return ONLY valid JSON, no other text:

{
  "purpose": "...",
  "category": "...",
  "summary": "...",
  "sentiment": "...",
  "suggestedLabel": "..."
}""",

        "organize_labels": """You are a Gmail organization expert. Analyze these labels and suggest better organization:

Current Labels: {{ labels | join(', ') }}
Category Breakdown: {% for category, count in breakdown %}{{ category }}: {{ count }} emails{% if not loop.last %}, {% endif %}{% endfor %}

Suggest improvements in this JSON format:
{
  "mergeSuggestions": [{"oldLabel": "Label1", "newLabel": "NewLabel", "reason": "..."}],
  "hierarchySuggestions": [{"parent": "Finance", "children": ["Banking", "Investments"]}],
  "renameSuggestions": [{"oldName": "Old", "newName": "New", "reason": "..."}],
  "newLabels": [{"name": "NewLabel", "purpose": "...", "estimatedEmails": 10}]
}

Return ONLY valid JSON, no other text:""",
    }

    def __init__(
        self,
        templates_dir: Optional[str] = None,
        categories: Sequence[str] = CATEGORIES,
        label_max_length: int = 30,
    ):
        """
        Initialize prompt engine.

        Args:
            templates_dir: Optional directory of template overrides
            categories: Category set named in the classify prompt
            label_max_length: Label length cap announced to the model
        """
        self.categories = list(categories)
        self.label_max_length = label_max_length
        self._env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=False,
        )
        self._custom_templates: Dict[str, str] = {}
        if templates_dir and os.path.isdir(templates_dir):
            self._load_custom_templates(templates_dir)

    def _load_custom_templates(self, templates_dir: str) -> None:
        for filename in sorted(os.listdir(templates_dir)):
            if not filename.endswith((".jinja2", ".txt", ".j2")):
                continue
            name = os.path.splitext(filename)[0]
            path = os.path.join(templates_dir, filename)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    self._custom_templates[name] = f.read()
                logger.debug(f"Loaded custom template: {name}")
            except OSError as e:
                logger.warning(f"Failed to load custom template {path}: {e}")

    def get_template(self, name: str) -> str:
        if name in self._custom_templates:
            return self._custom_templates[name]
        if name in self.DEFAULT_TEMPLATES:
            return self.DEFAULT_TEMPLATES[name]
        raise ValueError(f"Template not found: {name}")

    def render(self, name: str, **context) -> str:
        """
        Render a named template.

        Raises:
            ValueError: unknown template, or the template failed to render
        """
        try:
            template = self._env.from_string(self.get_template(name))
            return template.render(**context)
        except TemplateError as e:
            raise ValueError(f"Template '{name}' failed to render: {e}") from e

    def render_classify(self, subject: str, sender: str, snippet: str) -> str:
        return self.render(
            "classify",
            subject=subject or "(no subject)",
            sender=sender or "(unknown sender)",
            snippet=snippet or "(no snippet)",
            categories=self.categories,
            label_max_length=self.label_max_length,
        )

    def render_organize_labels(
        self, labels: Iterable[str], breakdown: List[Tuple[str, int]]
    ) -> str:
        return self.render(
            "organize_labels",
            labels=list(labels) or ["(none)"],
            breakdown=breakdown,
        )
