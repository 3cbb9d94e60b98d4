from .bootstrap import ensure_state_root, resolve_state_dir
from .container import Container

__all__ = ["Container", "ensure_state_root", "resolve_state_dir"]
