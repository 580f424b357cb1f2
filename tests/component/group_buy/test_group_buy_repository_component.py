"""
Component Tests for GroupBuyRepository

SQL shape and row mapping against a mocked PostgresClient.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.group_buy_service.group_buy_repository import GroupBuyRepository
from tests.contracts.group_buy.data_contract import (
    CampaignPhase,
    PaymentIntentStatus,
    PledgeStatus,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    client = MagicMock()
    client.query = AsyncMock(return_value=[])
    client.query_row = AsyncMock(return_value=None)
    client.execute = AsyncMock(return_value="UPDATE 0")
    client.execute_many = AsyncMock()

    @asynccontextmanager
    async def transaction():
        yield client

    client.transaction = transaction
    return client


@pytest.fixture
def pg_repository(db):
    return GroupBuyRepository(db=db)


def campaign_row(**overrides):
    row = {
        "campaign_id": "gbc_1",
        "supplier_id": "org_supplier",
        "title": "Bulk Monitors",
        "description": None,
        "start_date": NOW,
        "end_date": NOW,
        "target_quantity": 100,
        "phase": "locked",
        "grace_period_ends_at": NOW,
        "published_at": NOW,
        "locked_at": NOW,
        "cancelled_at": None,
        "completed_at": None,
        "metadata": '{"category": "hardware"}',
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def intent_row(**overrides):
    row = {
        "intent_id": "pi_1",
        "campaign_id": "gbc_1",
        "pledge_id": "plg_1",
        "buyer_org_id": "org_buyer",
        "quantity": 10,
        "unit_price": Decimal("90.00"),
        "amount": Decimal("900.00"),
        "status": "failed_retry_2",
        "retry_count": 2,
        "failure_reason": "card declined",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.mark.component
class TestCampaignQueries:

    @pytest.mark.asyncio
    async def test_compare_and_set_phase_guards_on_expected(self, pg_repository, db):
        db.query_row.return_value = campaign_row()

        campaign = await pg_repository.compare_and_set_phase(
            "gbc_1", CampaignPhase.GRACE_PERIOD, CampaignPhase.LOCKED, {"locked_at": NOW}
        )

        sql, = db.query_row.call_args.args
        params = db.query_row.call_args.kwargs["params"]
        assert "WHERE campaign_id = $1 AND phase = $2" in sql
        assert "locked_at = $5" in sql
        assert params[:3] == ["gbc_1", "grace_period", "locked"]
        assert campaign.phase == CampaignPhase.LOCKED
        assert campaign.metadata == {"category": "hardware"}

    @pytest.mark.asyncio
    async def test_compare_and_set_phase_lost_race(self, pg_repository, db):
        db.query_row.return_value = None

        result = await pg_repository.compare_and_set_phase("gbc_1", CampaignPhase.ACTIVE, CampaignPhase.GRACE_PERIOD)

        assert result is None

    @pytest.mark.asyncio
    async def test_get_campaign_for_share_locks_row(self, pg_repository, db):
        db.query_row.return_value = campaign_row(phase="active")

        await pg_repository.get_campaign("gbc_1", for_share=True)

        sql, = db.query_row.call_args.args
        assert sql.rstrip().endswith("FOR SHARE")

    @pytest.mark.asyncio
    async def test_get_campaign_plain_read(self, pg_repository, db):
        db.query_row.return_value = campaign_row(phase="active")

        await pg_repository.get_campaign("gbc_1")

        sql, = db.query_row.call_args.args
        assert "FOR SHARE" not in sql

    @pytest.mark.asyncio
    async def test_phase_timestamp_whitelist(self, pg_repository):
        with pytest.raises(ValueError):
            await pg_repository.compare_and_set_phase(
                "gbc_1", CampaignPhase.ACTIVE, CampaignPhase.GRACE_PERIOD, {"phase": NOW}
            )

    @pytest.mark.asyncio
    async def test_update_field_whitelist(self, pg_repository):
        with pytest.raises(ValueError):
            await pg_repository.update_campaign_fields("gbc_1", {"supplier_id": "org_other"})

    @pytest.mark.asyncio
    async def test_unknown_stored_phase_is_rejected(self, pg_repository, db):
        db.query_row.return_value = campaign_row(phase="archived")

        with pytest.raises(ValueError):
            await pg_repository.get_campaign("gbc_1")


@pytest.mark.component
class TestPledgeQueries:

    @pytest.mark.asyncio
    async def test_withdraw_pending_returns_row_count(self, pg_repository, db):
        db.execute.return_value = "UPDATE 3"

        count = await pg_repository.withdraw_pending_pledges("gbc_1")

        params = db.execute.call_args.kwargs["params"]
        assert count == 3
        assert params[1:3] == [PledgeStatus.WITHDRAWN.value, PledgeStatus.PENDING.value]

    @pytest.mark.asyncio
    async def test_sum_quantity(self, pg_repository, db):
        db.query_row.return_value = {"total": 42}

        total = await pg_repository.sum_pledge_quantity("gbc_1", [PledgeStatus.COMMITTED])

        assert total == 42
        assert db.query_row.call_args.kwargs["params"] == ["gbc_1", ["committed"]]


@pytest.mark.component
class TestPaymentIntentQueries:

    @pytest.mark.asyncio
    async def test_row_mapping(self, pg_repository, db):
        db.query_row.return_value = intent_row()

        intent = await pg_repository.get_payment_intent("pi_1")

        assert intent.status == PaymentIntentStatus.FAILED_RETRY_2
        assert intent.amount == Decimal("900.00")
        assert intent.retry_count == 2

    @pytest.mark.asyncio
    async def test_list_retryable_filters(self, pg_repository, db):
        db.query.return_value = [intent_row()]

        intents = await pg_repository.list_payment_intents(
            statuses=[PaymentIntentStatus.FAILED_RETRY_1, PaymentIntentStatus.FAILED_RETRY_2],
            max_retry_count=2,
            limit=500,
        )

        sql, = db.query.call_args.args
        assert "status = ANY($1)" in sql
        assert "retry_count <= $2" in sql
        assert sql.rstrip().endswith("LIMIT $3")
        assert db.query.call_args.kwargs["params"] == [["failed_retry_1", "failed_retry_2"], 2, 500]
        assert len(intents) == 1
