"""YAML state files for schedules and proxy rules.

Each component owns one file and rewrites it in full after every mutation:
- schedules.yaml: ScheduleEngine
- proxy_rules.yaml: ProxyRuleCompiler
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Generic, Optional, TypeVar

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT", bound=BaseModel)


class StateDocument(BaseModel):
    """On-disk layout shared by all state files."""

    version: int = 1
    updated_at: Optional[datetime] = None
    items: list[dict] = Field(default_factory=list)


class YamlStore(Generic[ItemT]):
    """Loads and saves a list of models as one YAML document."""

    def __init__(self, path: Path, model: type[ItemT]):
        self.path = path
        self.model = model

    def load(self) -> list[ItemT]:
        """Load items from disk; a missing file is an empty store."""
        if not self.path.exists():
            return []
        content = self.path.read_text()
        data = yaml.safe_load(content) or {}
        document = StateDocument(**data)
        return [self.model.model_validate(item) for item in document.items]

    def save(self, items: list[ItemT]) -> None:
        """Save items to disk (atomic write)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        document = StateDocument(
            updated_at=datetime.now(timezone.utc),
            items=[item.model_dump(mode="json") for item in items],
        )

        # Atomic write via temp file
        tmp_path = self.path.with_suffix(".tmp")
        content = yaml.dump(
            document.model_dump(mode="json"),
            default_flow_style=False,
            sort_keys=False,
        )
        tmp_path.write_text(content)
        tmp_path.rename(self.path)
