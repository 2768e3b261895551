"""
tests/unit/conftest.py — Shared setup for DB-free unit tests.

Relationships between models are declared by class name, so SQLAlchemy can
only configure the mappers once every model module has been imported. The
app factory does this in create_app(); unit tests never build an app, so
the imports happen here instead. Needed by tests that instantiate models
(RuleFeedback, TransactionOverride) against a mocked session.
"""

from backend.app.models import (  # noqa: F401
    account,
    household,
    household_member,
    rule_feedback,
    splitting_rule,
    transaction,
    transaction_override,
    user,
)
