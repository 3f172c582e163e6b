from .coordinator import MultisigCoordinator, parse_role

__all__ = ["MultisigCoordinator", "parse_role"]
