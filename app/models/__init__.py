# app/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from app.models.user import User  # noqa: F401

from app.models.coupon import Coupon  # noqa: F401
from app.models.coupon_event import CouponEvent  # noqa: F401

from app.models.transaction import EscrowTransaction  # noqa: F401
from app.models.trust import TrustProfile, TrustEvent  # noqa: F401
from app.models.notification import Notification  # noqa: F401
