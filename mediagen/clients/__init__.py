"""HTTP clients for backend services."""

from mediagen.clients.edge_functions import EdgeFunctionClient, EdgeFunctionError

__all__ = [
    "EdgeFunctionClient",
    "EdgeFunctionError",
]
