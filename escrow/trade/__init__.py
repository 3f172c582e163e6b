from .lifecycle import TradeCoordinator
from .deposits import DepositPoller, DepositStatus

__all__ = ["TradeCoordinator", "DepositPoller", "DepositStatus"]
