from __future__ import annotations

import uuid


def make_headers(workspace_id: uuid.UUID, *, role: str = "owner", user_id: uuid.UUID | None = None) -> dict[str, str]:
    return {
        "X-User-Id": str(user_id or uuid.uuid4()),
        "X-Workspace-Id": str(workspace_id),
        "X-Workspace-Role": role,
    }
