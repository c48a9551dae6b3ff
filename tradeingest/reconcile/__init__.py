from .duplicates import is_duplicate
from .grouping import apply_trade_grouping
from .position_tracker import PositionTracker, split_at_zero
