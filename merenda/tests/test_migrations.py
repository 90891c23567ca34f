from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from merenda.app.db.base import Base
from merenda.app.db.models import models_v1  # noqa: F401  (import for side effects)
from merenda.app.db.session import make_engine

ALEMBIC_DIR = Path(__file__).resolve().parents[1] / "alembic"


def _alembic_config(url: str) -> Config:
    # sans fichier ini : env.py ne reconfigure pas le logging de pytest
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def test_upgrade_builds_the_model_schema_and_downgrade_drops_it(tmp_path, monkeypatch):
    """
    GIVEN une base SQLite vide
    THEN upgrade head crée exactement les tables des modèles, downgrade base les retire
    """
    monkeypatch.delenv("DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'migrations.db'}"
    cfg = _alembic_config(url)
    engine = make_engine(url)
    try:
        command.upgrade(cfg, "head")

        tables = set(inspect(engine).get_table_names())
        assert tables - {"alembic_version"} == set(Base.metadata.tables)
        columns = {c["name"] for c in inspect(engine).get_columns("consumption_movements")}
        assert {"modality_balance_id", "billing_item_id", "movement_type", "quantity"} <= columns

        command.downgrade(cfg, "base")

        assert set(inspect(engine).get_table_names()) == {"alembic_version"}
    finally:
        engine.dispose()
