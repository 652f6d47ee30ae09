from arena.core.database import Base

# Import all models here to ensure they are registered with Base
from .records import MatchRecord, CounterRecord, PaymentRecord, PaymentSummaryRecord, LeaseRecord
from .match_model import (
    Match,
    MatchStatus,
    Player,
    PlayerStatus,
    Prize,
    FinalStats,
    EliminationEntry,
    EliminationReason,
    Payment,
)

# Tables are created by arena.core.database.init_db, called when a store is built,
# so importing models never touches a database.
