"""Jinja2 prompt assembly for search, crawl extraction and validation."""

import json
from datetime import date
from pathlib import Path
from typing import Any, NamedTuple, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .models import CandidateRecord, Category, DateWindow, Market, PageContent, utcnow


class PromptPair(NamedTuple):
    system: str
    user: str

    @property
    def combined(self) -> str:
        """Both prompts as one string, as stored on the job for audit."""
        return f"{self.system}\n\n---\n\n{self.user}"


class PromptBuilder:
    """Render prompt templates."""

    def __init__(self, template_dir: Path | None = None):
        """Initialize prompt builder with template directory.

        Args:
            template_dir: Path to templates directory.
                         Defaults to the package's templates/ folder.
        """
        if template_dir is None:
            template_dir = Path(__file__).parent / "templates"

        self.template_dir = template_dir
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, context: dict[str, Any]) -> str:
        """Render a template with the given context.

        Raises:
            TemplateNotFound: If template doesn't exist
        """
        template = self.env.get_template(template_name)
        return template.render(**context).strip()

    def search(self, market: Market, category: Category, window: DateWindow) -> PromptPair:
        """Discovery prompt: brand, search area, sources, category, exclusions, schema."""
        context = {"market": market, "category": category, "window": window}
        return PromptPair(
            system=self.render("search_system.j2", context),
            user=self.render("search_user.j2", context),
        )

    def crawl_extraction(
        self,
        page: PageContent,
        source_url: str,
        market: Market,
        window: DateWindow,
    ) -> PromptPair:
        context = {"page": page, "source_url": source_url, "market": market, "window": window}
        return PromptPair(
            system=self.render("crawl_system.j2", context),
            user=self.render("crawl_user.j2", context),
        )

    def validation(
        self,
        candidate: CandidateRecord,
        category_name: str,
        pillar: str,
        market: Optional[Market] = None,
        today: Optional[date] = None,
    ) -> PromptPair:
        """Validation prompt for one candidate, serialized in provider (camelCase) form."""
        candidate_json = json.dumps(
            candidate.model_dump(mode="json", by_alias=True, exclude_none=True),
            indent=2,
        )
        context = {
            "market": market,
            "category_name": category_name,
            "pillar": pillar,
            "today": (today or utcnow().date()).isoformat(),
            "candidate_json": candidate_json,
        }
        return PromptPair(
            system=self.render("validation_system.j2", context),
            user=self.render("validation_user.j2", context),
        )

    def exclusion_rules(self, category: Optional[Category] = None) -> str:
        return self.render(
            "exclusion_rules.j2",
            {"category_rules": category.exclusion_rules if category else None},
        )
