"""
Profile Fetch

The optimized single-user read: counts come from grouped sub-joins filtered
to the requested user instead of one correlated subquery per output row.
"""

import logging
from typing import Any, Dict, Optional

from db.connection import DatabaseConnection

logger = logging.getLogger(__name__)

OPTIMIZED_PROFILE_QUERY = """
    SELECT
        u.id,
        u.auth_id,
        u.full_name,
        u.username,
        u.birth_date,
        u.bio,
        u.long_bio,
        u.profile_json,
        u.address,
        u.phone_number,
        u.created_at,
        u.updated_at,
        a.email,
        ur.role,
        ud.division_name,
        COALESCE(ul.log_count, 0) AS log_count,
        COALESCE(urr.role_count, 0) AS role_count,
        COALESCE(udd.division_count, 0) AS division_count
    FROM users u
    LEFT JOIN auth a ON u.auth_id = a.id
    LEFT JOIN LATERAL (
        SELECT role
        FROM user_roles
        WHERE user_id = u.id
        ORDER BY created_at ASC NULLS LAST, id ASC
        LIMIT 1
    ) ur ON true
    LEFT JOIN LATERAL (
        SELECT division_name
        FROM user_divisions
        WHERE user_id = u.id
        ORDER BY created_at DESC NULLS LAST, id DESC
        LIMIT 1
    ) ud ON true
    LEFT JOIN (
        SELECT user_id, COUNT(*) AS log_count
        FROM user_logs
        WHERE user_id = %(user_id)s
        GROUP BY user_id
    ) ul ON u.id = ul.user_id
    LEFT JOIN (
        SELECT user_id, COUNT(*) AS role_count
        FROM user_roles
        WHERE user_id = %(user_id)s
        GROUP BY user_id
    ) urr ON u.id = urr.user_id
    LEFT JOIN (
        SELECT user_id, COUNT(*) AS division_count
        FROM user_divisions
        WHERE user_id = %(user_id)s
        GROUP BY user_id
    ) udd ON u.id = udd.user_id
    WHERE u.id = %(user_id)s;
"""


def fetch_user_profile(user_id: int) -> Optional[Dict[str, Any]]:
    """
    Fetch one user with email, a role, the current division and activity counts.

    Args:
        user_id: users.id to fetch

    Returns:
        Dictionary keyed by column name, or None if the user does not exist
    """
    columns, rows = DatabaseConnection.fetch_with_columns(
        OPTIMIZED_PROFILE_QUERY, {"user_id": user_id}
    )
    if not rows:
        logger.info(f"No user with id {user_id}")
        return None
    return dict(zip(columns, rows[0]))
