from app.models.user import User, UserRole
from app.models.currency import Currency
from app.models.balance import Balance, BalanceHistory
from app.models.deposit_address import DepositAddress, Counter
from app.models.payment import Payment, PaymentStatus
from app.models.sweep import Sweep, SweepStatus
from app.models.bonus import Bonus, BonusHistory
