from __future__ import annotations

import os
import socket
import uuid


def new_uuid() -> str:
    return str(uuid.uuid4())


def worker_id() -> str:
    """Identity stamped on claimed queue items (host:pid)."""
    return f"{socket.gethostname()}:{os.getpid()}"
