from .ports import BridgeError, BridgePort, CliBridgePort
from .synchronizer import TRACKER_STATUS, BridgeSynchronizer

__all__ = ["BridgeError", "BridgePort", "BridgeSynchronizer", "CliBridgePort", "TRACKER_STATUS"]
