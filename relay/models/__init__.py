from relay.models.continuation import Continuation

__all__ = [
    "Continuation",
]
