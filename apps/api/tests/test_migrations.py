"""
Migration graph checks: new revisions must chain off the current head.
"""
import os

from alembic.config import Config
from alembic.script import ScriptDirectory

from core.database import Base
import models  # noqa: F401

API_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXPECTED_HEADS = {"001"}


def _script_directory() -> ScriptDirectory:
    cfg = Config(os.path.join(API_ROOT, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(API_ROOT, "alembic"))
    return ScriptDirectory.from_config(cfg)


def test_single_head():
    assert set(_script_directory().get_heads()) == EXPECTED_HEADS


def test_single_root():
    revisions = list(_script_directory().walk_revisions())
    roots = [r.revision for r in revisions if r.down_revision is None]
    assert roots == ["001"]


def test_document_table_is_registered():
    table = Base.metadata.tables["document"]
    assert [c.name for c in table.primary_key.columns] == ["collection", "doc_id"]
