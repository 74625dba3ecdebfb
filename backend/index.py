from __future__ import annotations

import os
import sys
from typing import Any, Callable, Iterable, Optional

_BACKEND_ROOT = os.path.dirname(os.path.abspath(__file__))
_APP: Optional[Callable[..., Iterable[bytes]]] = None


def _load_app() -> Callable[..., Iterable[bytes]]:
    """Build the Flask app on first request; serverless cold starts skip the DB ping."""
    global _APP
    if _APP is None:
        if _BACKEND_ROOT not in sys.path:
            sys.path.insert(0, _BACKEND_ROOT)
        from api import create_app

        _APP = create_app(init_db=False)
    return _APP


def app(environ: Any, start_response: Any) -> Iterable[bytes]:
    return _load_app()(environ, start_response)
