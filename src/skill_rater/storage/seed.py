"""Load CEFR bands, exercises and scenarios from a YAML content file."""

import sys
from pathlib import Path

import structlog
import yaml

from skill_rater.config import get_settings
from skill_rater.models.dialogue import Scenario
from skill_rater.models.rating import CefrBand, Exercise
from skill_rater.storage.database import Database

logger = structlog.get_logger()


def seed_database(db: Database, content_path: Path) -> dict[str, int]:
    """Upsert the content in ``content_path``.

    Returns:
        Count of band sets, exercises and scenarios written.
    """
    with open(content_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    counts = {"cefr_bands": 0, "exercises": 0, "scenarios": 0}
    for language_id, bands in (data.get("cefr_bands") or {}).items():
        db.set_cefr_bands(language_id, [CefrBand(**b) for b in bands])
        counts["cefr_bands"] += 1
    for item in data.get("exercises") or []:
        db.save_exercise(Exercise(**item))
        counts["exercises"] += 1
    for item in data.get("scenarios") or []:
        db.save_scenario(Scenario(**item))
        counts["scenarios"] += 1

    logger.info("content_seeded", path=str(content_path), **counts)
    return counts


def main() -> None:
    """Initialize the schema and seed content (default: config/content/sample.yaml)."""
    settings = get_settings()
    if len(sys.argv) > 1:
        content_path = Path(sys.argv[1])
    else:
        content_path = settings.project_root / "config" / "content" / "sample.yaml"

    db = Database(settings.resolved_database_path)
    db.init_schema()
    seed_database(db, content_path)
    db.close()


if __name__ == "__main__":
    main()
