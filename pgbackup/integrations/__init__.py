# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI application and routes.
"""

from pgbackup.integrations.fastapi import (
    create_app,
    pgbackup_lifespan,
    register_routes,
)

__all__ = [
    "create_app",
    "pgbackup_lifespan",
    "register_routes",
]
