"""
Credit Ledger Module
Credit-based access control for paid generation jobs

This module provides:
- Account balances and plan entitlements (credits, features, models)
- Immutable ledger of every balance-affecting event
- Entitlement guard evaluated before any paid action
- Settlement engine (spend / refund / grant / cancel / expire)
- Reconciliation of payment and provider webhooks, pending gift orders

Collections used:
- accounts: One entitlement record per end user
- ledger_entries: Append-only transaction log
- pending_orders: Paid-action intents waiting for payment
- generation_tasks: Durable provider task status (TTL swept)
- payment_events: Webhook audit log
- credit_sync_issues: Settlements that could not be recorded
"""

__version__ = "1.0.0"
