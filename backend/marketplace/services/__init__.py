"""
业务服务层
"""
from marketplace.services.result import Ok, Err, ErrorKind, ReturnRequestError
from marketplace.services.eligibility import EligibilityValidator, EligibilityResult
from marketplace.services.return_request_service import ReturnRequestService, ResolutionOutcome
from marketplace.services.messaging import MessageService
from marketplace.services.admin_actions import AdminActionService
from marketplace.services.sla_service import SLAService
from marketplace.services.category_lookup import CategoryLookup
from marketplace.services.refund_client import HttpRefundClient, RefundError, RefundResult
from marketplace.services.notification_client import LogNotifier, WebhookNotifier, build_notifier

__all__ = [
    "Ok", "Err", "ErrorKind", "ReturnRequestError",
    "EligibilityValidator", "EligibilityResult",
    "ReturnRequestService", "ResolutionOutcome",
    "MessageService",
    "AdminActionService",
    "SLAService",
    "CategoryLookup",
    "HttpRefundClient", "RefundError", "RefundResult",
    "LogNotifier", "WebhookNotifier", "build_notifier",
]
