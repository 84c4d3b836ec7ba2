"""Task store schema migrations, applied in-process."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Alembic config pointing at ``db_path`` and the bundled revisions."""

    alembic_ini = _PROJECT_ROOT / "alembic.ini"
    config = Config(str(alembic_ini)) if alembic_ini.exists() else Config()
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the task store at ``db_path`` to the newest revision."""

    command.upgrade(alembic_config(db_path), "head")


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()
