# backend/app/routes/__init__.py
from . import (
    flow_integrity as flow_integrity,
    prometheus as prometheus,
)
