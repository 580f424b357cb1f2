"""
Group Buy Service Data Repository

Data access layer - PostgreSQL (asyncpg)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

import asyncpg

from core.postgres_client import PostgresClient
from .models import (
    Campaign,
    CampaignPhase,
    DiscountBracket,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentIntentTransition,
    Pledge,
    PledgeStatus,
    UnknownStatus,
    parse_campaign_phase,
    parse_payment_intent_status,
    parse_pledge_status,
)
from .protocols import DuplicateRecordError

logger = logging.getLogger(__name__)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    def default(value):
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
    return json.dumps(obj, default=default)


def _known(parsed: Union[Any, UnknownStatus]):
    if isinstance(parsed, UnknownStatus):
        raise ValueError(f"Stored row carries {parsed}")
    return parsed


UPDATABLE_CAMPAIGN_FIELDS = frozenset({
    "title", "description", "start_date", "end_date", "target_quantity", "metadata",
})

PHASE_TIMESTAMP_FIELDS = frozenset({
    "grace_period_ends_at", "published_at", "locked_at", "cancelled_at", "completed_at",
})


class GroupBuyRepository:
    """Group buy data repository - PostgreSQL (asyncpg)"""

    def __init__(self, db: Optional[PostgresClient] = None):
        self.db = db or PostgresClient(service_name="group_buy_service")
        self.schema = "group_buy"

        # Table names
        self.campaigns_table = "campaigns"
        self.brackets_table = "discount_brackets"
        self.pledges_table = "pledges"
        self.intents_table = "payment_intents"
        self.transitions_table = "payment_intent_transitions"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Group buy repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Group buy repository database connection closed")

    async def health_check(self) -> bool:
        return await self.db.health_check()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self.db.transaction():
            yield

    # ====================
    # Campaigns
    # ====================

    async def get_campaign(self, campaign_id: str, for_share: bool = False) -> Optional[Campaign]:
        query = f'''
            SELECT * FROM {self.schema}.{self.campaigns_table}
            WHERE campaign_id = $1
        '''
        if for_share:
            # Conflicts with the phase UPDATE, so lock_campaign waits for this transaction
            query += " FOR SHARE"
        row = await self.db.query_row(query, params=[campaign_id])
        if row is None:
            return None
        return await self._with_brackets(row)

    async def insert_campaign(self, campaign: Campaign) -> Campaign:
        query = f'''
            INSERT INTO {self.schema}.{self.campaigns_table} (
                campaign_id, supplier_id, title, description,
                start_date, end_date, target_quantity, phase,
                metadata, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING *
        '''
        now = datetime.now(timezone.utc)
        params = [
            campaign.campaign_id,
            campaign.supplier_id,
            campaign.title,
            campaign.description,
            campaign.start_date,
            campaign.end_date,
            campaign.target_quantity,
            campaign.phase.value,
            json_dumps(campaign.metadata),
            campaign.created_at or now,
            campaign.updated_at or now,
        ]
        async with self.db.transaction():
            row = await self._insert(query, params)
            await self._insert_brackets(campaign.campaign_id, campaign.brackets)
            return await self._with_brackets(row)

    async def update_campaign_fields(
        self, campaign_id: str, updates: Dict[str, Any]
    ) -> Optional[Campaign]:
        set_clauses = []
        params: List[Any] = []

        for key, value in updates.items():
            if key not in UPDATABLE_CAMPAIGN_FIELDS:
                raise ValueError(f"Campaign field {key} cannot be updated")
            params.append(json_dumps(value) if isinstance(value, dict) else value)
            set_clauses.append(f"{key} = ${len(params)}")

        params.append(datetime.now(timezone.utc))
        set_clauses.append(f"updated_at = ${len(params)}")
        params.append(campaign_id)

        query = f'''
            UPDATE {self.schema}.{self.campaigns_table}
            SET {", ".join(set_clauses)}
            WHERE campaign_id = ${len(params)}
            RETURNING *
        '''
        row = await self.db.query_row(query, params=params)
        if row is None:
            return None
        return await self._with_brackets(row)

    async def replace_brackets(
        self, campaign_id: str, brackets: Sequence[DiscountBracket]
    ) -> List[DiscountBracket]:
        async with self.db.transaction():
            await self.db.execute(
                f"DELETE FROM {self.schema}.{self.brackets_table} WHERE campaign_id = $1",
                params=[campaign_id],
            )
            await self._insert_brackets(campaign_id, brackets)
            return await self._get_brackets(campaign_id)

    async def delete_campaign(self, campaign_id: str) -> bool:
        async with self.db.transaction():
            await self.db.execute(
                f"DELETE FROM {self.schema}.{self.brackets_table} WHERE campaign_id = $1",
                params=[campaign_id],
            )
            status = await self.db.execute(
                f"DELETE FROM {self.schema}.{self.campaigns_table} WHERE campaign_id = $1",
                params=[campaign_id],
            )
        return status.endswith(" 1")

    async def compare_and_set_phase(
        self,
        campaign_id: str,
        expected: CampaignPhase,
        new_phase: CampaignPhase,
        timestamps: Optional[Dict[str, datetime]] = None,
    ) -> Optional[Campaign]:
        now = datetime.now(timezone.utc)
        params: List[Any] = [campaign_id, expected.value, new_phase.value, now]
        set_clauses = ["phase = $3", "updated_at = $4"]

        for key, value in (timestamps or {}).items():
            if key not in PHASE_TIMESTAMP_FIELDS:
                raise ValueError(f"Campaign field {key} is not a phase timestamp")
            params.append(value)
            set_clauses.append(f"{key} = ${len(params)}")

        query = f'''
            UPDATE {self.schema}.{self.campaigns_table}
            SET {", ".join(set_clauses)}
            WHERE campaign_id = $1 AND phase = $2
            RETURNING *
        '''
        row = await self.db.query_row(query, params=params)
        if row is None:
            return None
        return await self._with_brackets(row)

    async def list_campaigns(
        self,
        supplier_id: Optional[str] = None,
        phases: Optional[Sequence[CampaignPhase]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Campaign]:
        conditions = ["TRUE"]
        params: List[Any] = []

        if supplier_id:
            params.append(supplier_id)
            conditions.append(f"supplier_id = ${len(params)}")
        if phases:
            params.append([p.value for p in phases])
            conditions.append(f"phase = ANY(${len(params)})")

        params.extend([limit, offset])
        query = f'''
            SELECT * FROM {self.schema}.{self.campaigns_table}
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
        '''
        rows = await self.db.query(query, params=params)
        return [await self._with_brackets(row) for row in rows]

    async def find_campaigns_ending_before(
        self, phase: CampaignPhase, cutoff: datetime
    ) -> List[Campaign]:
        query = f'''
            SELECT * FROM {self.schema}.{self.campaigns_table}
            WHERE phase = $1 AND end_date <= $2
            ORDER BY end_date ASC
        '''
        rows = await self.db.query(query, params=[phase.value, cutoff])
        return [await self._with_brackets(row) for row in rows]

    # ====================
    # Pledges
    # ====================

    async def get_pledge(self, pledge_id: str) -> Optional[Pledge]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.schema}.{self.pledges_table} WHERE pledge_id = $1",
            params=[pledge_id],
        )
        return self._row_to_pledge(row) if row else None

    async def get_pledge_for_buyer(
        self, campaign_id: str, buyer_org_id: str
    ) -> Optional[Pledge]:
        row = await self.db.query_row(
            f'''
            SELECT * FROM {self.schema}.{self.pledges_table}
            WHERE campaign_id = $1 AND buyer_org_id = $2
            ''',
            params=[campaign_id, buyer_org_id],
        )
        return self._row_to_pledge(row) if row else None

    async def insert_pledge(self, pledge: Pledge) -> Pledge:
        query = f'''
            INSERT INTO {self.schema}.{self.pledges_table} (
                pledge_id, campaign_id, buyer_org_id, quantity, status,
                committed_at, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
        '''
        now = datetime.now(timezone.utc)
        params = [
            pledge.pledge_id,
            pledge.campaign_id,
            pledge.buyer_org_id,
            pledge.quantity,
            pledge.status.value,
            pledge.committed_at,
            pledge.created_at or now,
            pledge.updated_at or now,
        ]
        return self._row_to_pledge(await self._insert(query, params))

    async def update_pledge_quantity(self, pledge_id: str, quantity: int) -> Optional[Pledge]:
        row = await self.db.query_row(
            f'''
            UPDATE {self.schema}.{self.pledges_table}
            SET quantity = $2, updated_at = $3
            WHERE pledge_id = $1
            RETURNING *
            ''',
            params=[pledge_id, quantity, datetime.now(timezone.utc)],
        )
        return self._row_to_pledge(row) if row else None

    async def compare_and_set_pledge_status(
        self,
        pledge_id: str,
        expected: PledgeStatus,
        new_status: PledgeStatus,
        committed_at: Optional[datetime] = None,
        quantity: Optional[int] = None,
    ) -> Optional[Pledge]:
        row = await self.db.query_row(
            f'''
            UPDATE {self.schema}.{self.pledges_table}
            SET status = $3,
                committed_at = $4,
                quantity = COALESCE($5, quantity),
                updated_at = $6
            WHERE pledge_id = $1 AND status = $2
            RETURNING *
            ''',
            params=[
                pledge_id,
                expected.value,
                new_status.value,
                committed_at,
                quantity,
                datetime.now(timezone.utc),
            ],
        )
        return self._row_to_pledge(row) if row else None

    async def withdraw_pending_pledges(self, campaign_id: str) -> int:
        status = await self.db.execute(
            f'''
            UPDATE {self.schema}.{self.pledges_table}
            SET status = $2, updated_at = $4
            WHERE campaign_id = $1 AND status = $3
            ''',
            params=[
                campaign_id,
                PledgeStatus.WITHDRAWN.value,
                PledgeStatus.PENDING.value,
                datetime.now(timezone.utc),
            ],
        )
        # asyncpg status string: "UPDATE <count>"
        return int(status.split()[-1])

    async def list_pledges(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[Sequence[PledgeStatus]] = None,
    ) -> List[Pledge]:
        conditions = ["TRUE"]
        params: List[Any] = []

        if campaign_id:
            params.append(campaign_id)
            conditions.append(f"campaign_id = ${len(params)}")
        if buyer_org_id:
            params.append(buyer_org_id)
            conditions.append(f"buyer_org_id = ${len(params)}")
        if statuses:
            params.append([s.value for s in statuses])
            conditions.append(f"status = ANY(${len(params)})")

        query = f'''
            SELECT * FROM {self.schema}.{self.pledges_table}
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at ASC
        '''
        rows = await self.db.query(query, params=params)
        return [self._row_to_pledge(row) for row in rows]

    async def sum_pledge_quantity(
        self, campaign_id: str, statuses: Sequence[PledgeStatus]
    ) -> int:
        row = await self.db.query_row(
            f'''
            SELECT COALESCE(SUM(quantity), 0) AS total
            FROM {self.schema}.{self.pledges_table}
            WHERE campaign_id = $1 AND status = ANY($2)
            ''',
            params=[campaign_id, [s.value for s in statuses]],
        )
        return int(row["total"]) if row else 0

    # ====================
    # Payment Intents
    # ====================

    async def insert_payment_intent(self, intent: PaymentIntent) -> PaymentIntent:
        query = f'''
            INSERT INTO {self.schema}.{self.intents_table} (
                intent_id, campaign_id, pledge_id, buyer_org_id,
                quantity, unit_price, amount, status, retry_count,
                failure_reason, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            RETURNING *
        '''
        now = datetime.now(timezone.utc)
        params = [
            intent.intent_id,
            intent.campaign_id,
            intent.pledge_id,
            intent.buyer_org_id,
            intent.quantity,
            intent.unit_price,
            intent.amount,
            intent.status.value,
            intent.retry_count,
            intent.failure_reason,
            intent.created_at or now,
            intent.updated_at or now,
        ]
        return self._row_to_intent(await self._insert(query, params))

    async def get_payment_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        row = await self.db.query_row(
            f"SELECT * FROM {self.schema}.{self.intents_table} WHERE intent_id = $1",
            params=[intent_id],
        )
        return self._row_to_intent(row) if row else None

    async def compare_and_set_intent_status(
        self,
        intent_id: str,
        expected: PaymentIntentStatus,
        new_status: PaymentIntentStatus,
        retry_count: int,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentIntent]:
        row = await self.db.query_row(
            f'''
            UPDATE {self.schema}.{self.intents_table}
            SET status = $3, retry_count = $4, failure_reason = $5, updated_at = $6
            WHERE intent_id = $1 AND status = $2
            RETURNING *
            ''',
            params=[
                intent_id,
                expected.value,
                new_status.value,
                retry_count,
                failure_reason,
                datetime.now(timezone.utc),
            ],
        )
        return self._row_to_intent(row) if row else None

    async def add_intent_transition(
        self, transition: PaymentIntentTransition
    ) -> PaymentIntentTransition:
        row = await self.db.query_row(
            f'''
            INSERT INTO {self.schema}.{self.transitions_table} (
                transition_id, intent_id, from_status, to_status,
                retry_count, reason, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            ''',
            params=[
                transition.transition_id,
                transition.intent_id,
                transition.from_status.value,
                transition.to_status.value,
                transition.retry_count,
                transition.reason,
                transition.created_at or datetime.now(timezone.utc),
            ],
        )
        return self._row_to_transition(row)

    async def list_intent_transitions(self, intent_id: str) -> List[PaymentIntentTransition]:
        rows = await self.db.query(
            f'''
            SELECT * FROM {self.schema}.{self.transitions_table}
            WHERE intent_id = $1
            ORDER BY created_at ASC
            ''',
            params=[intent_id],
        )
        return [self._row_to_transition(row) for row in rows]

    async def list_payment_intents(
        self,
        campaign_id: Optional[str] = None,
        buyer_org_id: Optional[str] = None,
        statuses: Optional[Sequence[PaymentIntentStatus]] = None,
        max_retry_count: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentIntent]:
        conditions = ["TRUE"]
        params: List[Any] = []

        if campaign_id:
            params.append(campaign_id)
            conditions.append(f"campaign_id = ${len(params)}")
        if buyer_org_id:
            params.append(buyer_org_id)
            conditions.append(f"buyer_org_id = ${len(params)}")
        if statuses:
            params.append([s.value for s in statuses])
            conditions.append(f"status = ANY(${len(params)})")
        if max_retry_count is not None:
            params.append(max_retry_count)
            conditions.append(f"retry_count <= ${len(params)}")

        query = f'''
            SELECT * FROM {self.schema}.{self.intents_table}
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at ASC
        '''
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        rows = await self.db.query(query, params=params)
        return [self._row_to_intent(row) for row in rows]

    # ====================
    # Helpers
    # ====================

    async def _insert(self, query: str, params: List[Any]) -> Dict[str, Any]:
        try:
            return await self.db.query_row(query, params=params)
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecordError(str(e), constraint=e.constraint_name) from e

    async def _insert_brackets(self, campaign_id: str, brackets: Sequence[DiscountBracket]) -> None:
        if not brackets:
            return
        await self.db.execute_many(
            f'''
            INSERT INTO {self.schema}.{self.brackets_table} (
                bracket_id, campaign_id, min_quantity, max_quantity,
                unit_price, bracket_order
            ) VALUES ($1, $2, $3, $4, $5, $6)
            ''',
            [
                [b.bracket_id, campaign_id, b.min_quantity, b.max_quantity, b.unit_price, b.bracket_order]
                for b in brackets
            ],
        )

    async def _get_brackets(self, campaign_id: str) -> List[DiscountBracket]:
        rows = await self.db.query(
            f'''
            SELECT * FROM {self.schema}.{self.brackets_table}
            WHERE campaign_id = $1
            ORDER BY bracket_order ASC
            ''',
            params=[campaign_id],
        )
        return [
            DiscountBracket(
                bracket_id=row["bracket_id"],
                campaign_id=row["campaign_id"],
                min_quantity=row["min_quantity"],
                max_quantity=row.get("max_quantity"),
                unit_price=Decimal(str(row["unit_price"])),
                bracket_order=row["bracket_order"],
            )
            for row in rows
        ]

    async def _with_brackets(self, row: Dict[str, Any]) -> Campaign:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return Campaign(
            campaign_id=row["campaign_id"],
            supplier_id=row["supplier_id"],
            title=row["title"],
            description=row.get("description"),
            start_date=row["start_date"],
            end_date=row["end_date"],
            target_quantity=row.get("target_quantity") or 0,
            brackets=await self._get_brackets(row["campaign_id"]),
            phase=_known(parse_campaign_phase(row["phase"])),
            grace_period_ends_at=row.get("grace_period_ends_at"),
            published_at=row.get("published_at"),
            locked_at=row.get("locked_at"),
            cancelled_at=row.get("cancelled_at"),
            completed_at=row.get("completed_at"),
            metadata=metadata,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_pledge(row: Dict[str, Any]) -> Pledge:
        return Pledge(
            pledge_id=row["pledge_id"],
            campaign_id=row["campaign_id"],
            buyer_org_id=row["buyer_org_id"],
            quantity=row["quantity"],
            status=_known(parse_pledge_status(row["status"])),
            committed_at=row.get("committed_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_intent(row: Dict[str, Any]) -> PaymentIntent:
        return PaymentIntent(
            intent_id=row["intent_id"],
            campaign_id=row["campaign_id"],
            pledge_id=row["pledge_id"],
            buyer_org_id=row["buyer_org_id"],
            quantity=row["quantity"],
            unit_price=Decimal(str(row["unit_price"])),
            amount=Decimal(str(row["amount"])),
            status=_known(parse_payment_intent_status(row["status"])),
            retry_count=row["retry_count"],
            failure_reason=row.get("failure_reason"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_transition(row: Dict[str, Any]) -> PaymentIntentTransition:
        return PaymentIntentTransition(
            transition_id=row["transition_id"],
            intent_id=row["intent_id"],
            from_status=_known(parse_payment_intent_status(row["from_status"])),
            to_status=_known(parse_payment_intent_status(row["to_status"])),
            retry_count=row["retry_count"],
            reason=row.get("reason"),
            created_at=row.get("created_at"),
        )
