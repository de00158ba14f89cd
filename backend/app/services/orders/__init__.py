"""
Order Lifecycle Services

Order state machine, deadlines, revisions, refunds and payout destinations
for the gig marketplace.

- OrderStateMachine: transition table, guards, conditional commits
- RevisionWorkflow: bounded rework requests
- RefundWizard / RefundWorkflow: requester flow and administrator decisions
- BankAccountRegistry: payout destinations with a single primary
- PersistenceGateway: fresh reads, conditional writes, change feed
- NotificationDispatcher: fire-and-forget counterparty events
"""

from .errors import (
    OrderEngineError, ValidationError, EmptyMessageError, GuardError, DeadlineExpiredError,
    RevisionLimitError, RefundNotEligibleError, ConflictError, TransportError,
    AuthorizationError, NotFoundError,
)
from . import deadline_tracker
from .state_machine import OrderStateMachine, TRANSITIONS, TERMINAL_STATES, effective_status
from .revision_workflow import RevisionWorkflow, is_revision_disabled, revision_count_text, remaining_revisions
from .bank_accounts import BankAccountRegistry, BANK_LIST, mask
from .refund_workflow import (
    RefundWizard, RefundWorkflow, RefundSubmission, RefundSummary, WizardStep,
    REFUND_REASONS, OTHER_REASON, REFUND_ELIGIBLE_STATUSES, check_refund_eligibility,
)
from .persistence import PersistenceGateway, ChangeFeed, Subscription, change_feed
from .notifications import NotificationDispatcher, DatabaseNotificationSink, get_dispatcher
from .order_service import OrderService, OrderView, LiveOrderUpdate, DeadlineSweep
from .api_client import RefundApiClient, RemoteBankAccounts

__all__ = [
    'OrderEngineError',
    'ValidationError',
    'EmptyMessageError',
    'GuardError',
    'DeadlineExpiredError',
    'RevisionLimitError',
    'RefundNotEligibleError',
    'ConflictError',
    'TransportError',
    'AuthorizationError',
    'NotFoundError',
    'deadline_tracker',
    'OrderStateMachine',
    'TRANSITIONS',
    'TERMINAL_STATES',
    'effective_status',
    'RevisionWorkflow',
    'is_revision_disabled',
    'revision_count_text',
    'remaining_revisions',
    'BankAccountRegistry',
    'BANK_LIST',
    'mask',
    'RefundWizard',
    'RefundWorkflow',
    'RefundSubmission',
    'RefundSummary',
    'WizardStep',
    'REFUND_REASONS',
    'OTHER_REASON',
    'REFUND_ELIGIBLE_STATUSES',
    'check_refund_eligibility',
    'PersistenceGateway',
    'ChangeFeed',
    'Subscription',
    'change_feed',
    'NotificationDispatcher',
    'DatabaseNotificationSink',
    'get_dispatcher',
    'OrderService',
    'OrderView',
    'LiveOrderUpdate',
    'DeadlineSweep',
    'RefundApiClient',
    'RemoteBankAccounts',
]
