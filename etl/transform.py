"""
In-Memory Cleaning

Applies the cleaning sequence to pandas DataFrames instead of the database.
Backs the dry-run mode: the operator sees what a real run would update and
delete without anything being written.

Text trimming removes spaces only, like PostgreSQL TRIM().
"""

import logging
import re
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from db.schema import COLUMNS, TABLES
from etl.validator import (
    MIN_BIRTH_DATE,
    MIN_PHONE_DIGITS,
    EmailValidator,
    count_digits,
    is_missing,
    parse_date,
    strip_phone,
)

logger = logging.getLogger(__name__)

WHITESPACE_RUN = re.compile(r"\s+")


def _text(func: Callable[[str], Any]) -> Callable[[Any], Any]:
    """Wrap a string transform so missing values pass through untouched."""
    def apply(value: Any) -> Any:
        if is_missing(value):
            return None
        return func(str(value))
    return apply


lower_trim = _text(lambda v: v.strip(" ").lower())
trim_or_null = _text(lambda v: v.strip(" ") or None)
collapse_whitespace = _text(lambda v: WHITESPACE_RUN.sub(" ", v).strip(" "))


def _blank(value: Any) -> bool:
    return is_missing(value) or str(value).strip(" ") == ""


def _count_changed(before: pd.Series, after: pd.Series) -> int:
    changed = 0
    for old, new in zip(before.tolist(), after.tolist()):
        if is_missing(old) and is_missing(new):
            continue
        if is_missing(old) != is_missing(new) or old != new:
            changed += 1
    return changed


class ProfileDataCleaner:
    """
    Cleans the five profile tables held as DataFrames.

    Operations, in order:
    - Email normalization and invalid-email removal
    - Phone, username, full name, birth date and bio normalization
    - Orphan removal and earliest-wins deduplication
    - Cascade cleanup and label normalization of related tables
    """

    def __init__(self, tie_breaker: str = "id", today: Optional[date] = None):
        """
        Args:
            tie_breaker: "id" or "none", see etl.cleaning.dedup_statement
            today: Upper bound for birth dates (defaults to today)
        """
        if tie_breaker not in ("id", "none"):
            raise ValueError(f"Unknown tie breaker: {tie_breaker}")
        self.tie_breaker = tie_breaker
        self.today = today or date.today()
        self.email_validator = EmailValidator()
        self.metrics: Dict[str, int] = {}

    def clean(
        self, tables: Dict[str, pd.DataFrame]
    ) -> Tuple[Dict[str, pd.DataFrame], Dict[str, int]]:
        """
        Run every cleaning step.

        Args:
            tables: Mapping of table name to DataFrame; missing tables are
                treated as empty

        Returns:
            Tuple of (cleaned_tables, metrics) where metrics maps step name to
            the number of rows updated or removed
        """
        self.metrics = {}
        frames = {
            name: (tables[name].copy() if name in tables else pd.DataFrame(columns=COLUMNS[name]))
            for name in TABLES
        }
        for name, frame in frames.items():
            for column in COLUMNS[name]:
                if column not in frame.columns:
                    frame[column] = None
            frames[name] = frame.reset_index(drop=True).astype(object)

        auth, users = frames["auth"], frames["users"]
        roles, divisions, logs = frames["user_roles"], frames["user_divisions"], frames["user_logs"]

        auth = self._update("Normalize auth email", auth, "email", lower_trim)
        auth = self._remove("Remove invalid auth emails", auth, self._invalid_email_mask(auth))

        users = self._standardize_phones(users)
        users = self._update("Normalize username", users, "username", lower_trim)
        users = self._update("Normalize full name", users, "full_name", collapse_whitespace)
        users = self._update("Null out invalid birth dates", users, "birth_date", self._bounded_birth_date)
        users = self._trim_bios(users)

        users = self._remove("Remove orphaned users", users, self._orphaned_users_mask(users, auth))
        users = self._remove("Deduplicate usernames", users, self._duplicate_mask(users, ["username"]))
        auth = self._remove("Deduplicate emails", auth, self._duplicate_mask(auth, ["email"]))
        users = self._remove(
            "Remove users missing essential fields",
            users,
            users["full_name"].map(_blank)
            | users["username"].map(_blank)
            | self._orphaned_users_mask(users, auth),
        )

        user_ids = set(users["id"].tolist())
        roles = self._remove_related(roles, "role", user_ids)
        divisions = self._remove_related(divisions, "division_name", user_ids)
        logs = self._remove_related(logs, "action", user_ids)

        step = "Standardize role and division names"
        roles = self._update(step, roles, "role", lower_trim)
        divisions = self._update(step, divisions, "division_name", collapse_whitespace)

        step = "Deduplicate roles and divisions"
        roles = self._remove(step, roles, self._duplicate_mask(roles, ["user_id", "role"]))
        divisions = self._remove(
            step, divisions, self._duplicate_mask(divisions, ["user_id", "division_name"])
        )

        logs = self._update("Standardize log actions", logs, "action", lower_trim)

        cleaned = {
            "auth": auth,
            "users": users,
            "user_roles": roles,
            "user_divisions": divisions,
            "user_logs": logs,
        }
        cleaned = {name: frame.reset_index(drop=True) for name, frame in cleaned.items()}

        logger.info(
            "In-memory cleaning complete: "
            + ", ".join(f"{name}={len(frame)}" for name, frame in cleaned.items())
        )
        return cleaned, self.metrics

    def _update(self, step: str, frame: pd.DataFrame, column: str, func) -> pd.DataFrame:
        # object dtype so None survives; Series.map may infer str and yield NaN
        after = pd.Series([func(value) for value in frame[column].tolist()], index=frame.index, dtype=object)
        self.metrics[step] = self.metrics.get(step, 0) + _count_changed(frame[column], after)
        return frame.assign(**{column: after})

    def _remove(self, step: str, frame: pd.DataFrame, mask: pd.Series) -> pd.DataFrame:
        mask = mask.astype(bool) if len(frame) else pd.Series(False, index=frame.index)
        self.metrics[step] = self.metrics.get(step, 0) + int(mask.sum())
        return frame[~mask]

    def _remove_related(self, frame: pd.DataFrame, label: str, user_ids: set) -> pd.DataFrame:
        orphaned = frame["user_id"].map(lambda v: is_missing(v) or v not in user_ids)
        return self._remove("Clean related tables", frame, orphaned | frame[label].map(_blank))

    def _invalid_email_mask(self, auth: pd.DataFrame) -> pd.Series:
        return auth["email"].map(
            lambda v: _blank(v) or not self.email_validator.EMAIL_REGEX.fullmatch(str(v))
        )

    def _standardize_phones(self, users: pd.DataFrame) -> pd.DataFrame:
        def standardize(value: Any) -> Optional[str]:
            if is_missing(value):
                return None
            stripped = strip_phone(str(value))
            if count_digits(stripped) < MIN_PHONE_DIGITS:
                return None
            return stripped

        return self._update("Standardize phone numbers", users, "phone_number", standardize)

    def _bounded_birth_date(self, value: Any) -> Any:
        if is_missing(value):
            return None
        parsed = parse_date(value)
        if parsed is None:
            return value
        if parsed < MIN_BIRTH_DATE or parsed > self.today:
            return None
        return value

    def _trim_bios(self, users: pd.DataFrame) -> pd.DataFrame:
        users = self._update("Trim bio fields", users, "bio", trim_or_null)
        return self._update("Trim bio fields", users, "long_bio", trim_or_null)

    @staticmethod
    def _orphaned_users_mask(users: pd.DataFrame, auth: pd.DataFrame) -> pd.Series:
        auth_ids = set(auth["id"].tolist())
        return users["auth_id"].map(lambda v: is_missing(v) or v not in auth_ids)

    def _duplicate_mask(self, frame: pd.DataFrame, keys: List[str]) -> pd.Series:
        """
        Mark rows that lose earliest-wins deduplication.

        Rows with a missing key never take part.
        """
        if frame.empty:
            return pd.Series(False, index=frame.index)

        eligible = ~frame[keys].apply(lambda col: col.map(is_missing)).any(axis=1)
        candidates = frame[eligible].assign(_created=pd.to_datetime(frame.loc[eligible, "created_at"]))
        mask = pd.Series(False, index=frame.index)
        if candidates.empty:
            return mask

        if self.tie_breaker == "id":
            ordered = candidates.sort_values(
                ["_created", "id"], na_position="last", kind="mergesort"
            )
            losers = ordered.duplicated(subset=keys, keep="first")
            mask.loc[losers[losers].index] = True
        else:
            sizes = candidates.groupby(keys)["id"].transform(len)
            earliest = candidates.groupby(keys)["_created"].transform("min")
            losers = (sizes > 1) & (candidates["_created"] > earliest)
            mask.loc[losers[losers].index] = True

        return mask


def dry_run_clean(
    tables: Dict[str, pd.DataFrame],
    tie_breaker: str = "id",
) -> Tuple[Dict[str, pd.DataFrame], Dict[str, int]]:
    """
    Convenience function to clean extracted tables in memory.

    Args:
        tables: Mapping of table name to DataFrame
        tie_breaker: Deduplication tie breaker

    Returns:
        Tuple of (cleaned_tables, metrics)
    """
    cleaner = ProfileDataCleaner(tie_breaker=tie_breaker)
    return cleaner.clean(tables)
