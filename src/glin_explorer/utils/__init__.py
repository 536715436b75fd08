"""Transport helpers for the node header stream and the backend API."""
