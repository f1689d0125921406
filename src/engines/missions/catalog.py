"""
Mission Catalog - In-memory registry of mission definitions.

Definitions are authored elsewhere and handed to the catalog, either one by one
or as a JSON file (a list of definitions, or an object with a "missions" list).
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from src.engines.missions.errors import InvalidMissionDefinitionError, MissionNotFoundError
from src.engines.missions.types import MissionDefinition
from src.logging_config import get_logger

logger = get_logger(__name__)


class MissionCatalog:
    """Registry keyed by mission id."""

    def __init__(self, definitions: Optional[Iterable[MissionDefinition]] = None):
        self._missions: Dict[str, MissionDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: Union[MissionDefinition, Mapping[str, Any]], replace: bool = False) -> MissionDefinition:
        """Validate and register a definition. Raises InvalidMissionDefinitionError."""
        if not isinstance(definition, MissionDefinition):
            try:
                definition = MissionDefinition.model_validate(dict(definition))
            except ValidationError as exc:
                raise InvalidMissionDefinitionError(
                    "Invalid mission definition",
                    details={"errors": exc.errors(include_url=False, include_context=False)},
                ) from exc
        if definition.id in self._missions and not replace:
            raise InvalidMissionDefinitionError(
                f"Mission {definition.id} is already registered", details={"mission_id": definition.id}
            )
        self._missions[definition.id] = definition
        return definition

    def get(self, mission_id: str) -> MissionDefinition:
        mission = self._missions.get(mission_id)
        if mission is None:
            raise MissionNotFoundError(f"Mission {mission_id} not found", details={"mission_id": mission_id})
        return mission

    def list(self, category: Optional[str] = None) -> List[MissionDefinition]:
        missions = sorted(self._missions.values(), key=lambda m: m.id)
        if category:
            missions = [m for m in missions if m.category == category]
        return missions

    def __contains__(self, mission_id: str) -> bool:
        return mission_id in self._missions

    def __len__(self) -> int:
        return len(self._missions)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "MissionCatalog":
        """Load definitions from a JSON file."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = raw.get("missions", []) if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise InvalidMissionDefinitionError(f"{path} must contain a list of missions")
        catalog = cls()
        for entry in entries:
            catalog.register(entry)
        logger.info("Mission catalog loaded", extra={"path": str(path), "missions": len(catalog)})
        return catalog
