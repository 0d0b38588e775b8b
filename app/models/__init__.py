from app.models.activity import ActivityAction, ActivityLog  # noqa: F401
from app.models.billing import (  # noqa: F401
    BillingInfo,
    BillingState,
    PaymentOrder,
    PaymentOrderStatus,
    Subscription,
)
from app.models.content import ContentAddress, ContentRecord, FolderRecord  # noqa: F401
from app.models.user import User  # noqa: F401
