"""Models package."""

from .user import User
from .plan import Plan
from .subscription import Subscription
from .credit_ledger import CreditLedger
from .daily_usage import DailyUsage
from .billing_history import BillingHistory
from .referral_stats import ReferralStats
