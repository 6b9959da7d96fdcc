# ops_engine/custom_exceptions.py
class InsufficientDataError(Exception):
    """Raised when there is not enough history to compute a meaningful result."""
    pass

class UpstreamReadError(Exception):
    """Raised when the metrics store or the result cache cannot be reached."""
    pass

class AlertDeliveryError(Exception):
    """Raised when a webhook alert could not be delivered."""
    pass

class ModelLoadError(Exception):
    """Raised when a model checkpoint exists but fails to load."""
    pass
