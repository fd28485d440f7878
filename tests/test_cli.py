"""
Tests for the command line interface
"""

from datetime import timedelta

import pytest

from reliability_billing.cli import main
from reliability_billing.core.periods import utcnow
from reliability_billing.persistence.database import Database


@pytest.fixture
def cli_env(temp_db, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{temp_db}")
    return temp_db


def test_seed_plans(cli_env, capsys):
    assert main(["seed-plans"]) == 0

    out = capsys.readouterr().out
    assert "Plans created: 3" in out
    assert "STARTER" in out


def test_seed_plans_twice(cli_env, capsys):
    main(["seed-plans"])
    assert main(["seed-plans"]) == 0
    assert "Plans created: 0" in capsys.readouterr().out


def test_invoice_and_rebuild(cli_env, capsys):
    from reliability_billing.billing.subscriptions import SubscriptionService
    from reliability_billing.persistence.repository import PlanRepository

    main(["seed-plans"])
    db = Database(f"sqlite:///{cli_env}")
    db.initialize()
    PlanRepository(db).seed_defaults()
    sub_id = SubscriptionService(db).create_subscription(
        "tenant-1", "STARTER", utcnow() - timedelta(days=33)
    )["subscription_id"]
    db.close()

    assert main(["invoice", sub_id]) == 0
    out = capsys.readouterr().out
    assert "4000.00" in out
    assert "Stripe sync: pending" in out

    assert main(["rebuild", sub_id]) == 0
    assert "Consistent:         Yes" in capsys.readouterr().out


def test_invoice_open_period_exits_nonzero(cli_env, capsys):
    from reliability_billing.billing.subscriptions import SubscriptionService

    main(["seed-plans"])
    db = Database(f"sqlite:///{cli_env}")
    db.initialize()
    sub_id = SubscriptionService(db).create_subscription("tenant-1", "STARTER")["subscription_id"]
    db.close()

    assert main(["invoice", sub_id]) == 1
    assert "Error:" in capsys.readouterr().out


def test_unknown_subscription_exits_nonzero(cli_env, capsys):
    main(["seed-plans"])

    assert main(["invoice", "missing"]) == 1
    assert "Error:" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == 1
