"""
Integration Tests: init_db script
=================================
"""

import importlib.util
from pathlib import Path

import pytest

from database import UserDB

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "init_db.py"


@pytest.fixture(scope="module")
def init_db():
    spec = importlib.util.spec_from_file_location("init_db_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.integration
class TestSeedDemoData:

    def test_seeds_one_user_per_role(self, init_db, db):
        accounts = init_db.seed_demo_data(db)
        assert sorted(accounts) == ["assister@example.com", "authority@example.com", "bidder@example.com"]

        roles = {user.email: (user.role, user.organization_id is not None) for user in db.query(UserDB).all()}
        assert roles == {
            "authority@example.com": ("AUTHORITY", True),
            "bidder@example.com": ("BIDDER", True),
            "assister@example.com": ("ASSISTER", False),
        }

    def test_seeding_twice_is_a_noop(self, init_db, db):
        first = init_db.seed_demo_data(db)
        second = init_db.seed_demo_data(db)
        assert first == second
        assert db.query(UserDB).count() == 3
