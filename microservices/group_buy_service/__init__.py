"""
Group Buy Service

Campaign settlement and collection engine providing:
- Campaign phase lifecycle (draft, active, grace period, locked, done, cancelled)
- Tiered discount bracket pricing
- Buyer pledge ledger with phase-dependent mutation rules
- Settlement into payment intents at a single clearing price
- Bounded payment retry with escalation to accounts receivable

Port: 8262
"""

__version__ = "1.0.0"
__service__ = "group_buy_service"
