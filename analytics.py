"""
Pipeline Analytics & Reporting

Provides:
- Activity summary (leads added, DMs sent: today / this week / this month)
- Reply and conversion rates
- Platform breakdown
- Day-by-day activity for the last week

Computed on demand from the current lead list; nothing here is stored.
Weeks start on Sunday and day boundaries are taken in UTC.
"""

from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from outreach_engine import Lead, LeadStatus, utcnow

COLUMNS = ["id", "platform", "category", "status", "added_at", "dm_sent_at"]
REPLIED_STATUSES = {LeadStatus.REPLIED.value, LeadStatus.CONVERTED.value}


class OutreachAnalytics:
    """
    Analytics over a snapshot of leads.
    """

    def __init__(self, leads: List[Lead]):
        self.df = pd.DataFrame(
            [
                {
                    "id": lead.id,
                    "platform": lead.platform.value,
                    "category": lead.category.value,
                    "status": lead.status.value,
                    "added_at": lead.added_at,
                    "dm_sent_at": lead.dm_sent_at,
                }
                for lead in leads
            ],
            columns=COLUMNS,
        )
        self.df["added_at"] = pd.to_datetime(self.df["added_at"], utc=True)
        self.df["dm_sent_at"] = pd.to_datetime(self.df["dm_sent_at"], utc=True)

    @staticmethod
    def _boundaries(now: Optional[datetime]) -> Dict[str, pd.Timestamp]:
        now_ts = pd.Timestamp(now or utcnow())
        if now_ts.tzinfo is None:
            now_ts = now_ts.tz_localize("UTC")
        today = now_ts.normalize()
        return {
            "today": today,
            "week": today - pd.Timedelta(days=(today.weekday() + 1) % 7),
            "month": today.replace(day=1),
        }

    def summary(self, now: Optional[datetime] = None) -> Dict:
        """
        Dashboard counters.

        Returns:
            Dict of counts plus reply/conversion rates in percent of DMs sent
        """
        bounds = self._boundaries(now)
        added = self.df["added_at"]
        dm_sent = self.df["dm_sent_at"]

        total_dms = int(dm_sent.notna().sum())
        replied = int(self.df["status"].isin(REPLIED_STATUSES).sum())
        converted = int((self.df["status"] == LeadStatus.CONVERTED.value).sum())

        return {
            "total_leads": len(self.df),
            "added_today": int((added.dt.normalize() == bounds["today"]).sum()),
            "added_this_week": int((added >= bounds["week"]).sum()),
            "added_this_month": int((added >= bounds["month"]).sum()),
            "dms_sent_today": int((dm_sent.dt.normalize() == bounds["today"]).sum()),
            "dms_sent_this_week": int((dm_sent >= bounds["week"]).sum()),
            "dms_sent_this_month": int((dm_sent >= bounds["month"]).sum()),
            "dms_sent_total": total_dms,
            "replied": replied,
            "converted": converted,
            "reply_rate": round(replied / total_dms * 100, 1) if total_dms > 0 else 0,
            "conversion_rate": round(converted / total_dms * 100, 1) if total_dms > 0 else 0,
        }

    def platform_breakdown(self) -> pd.DataFrame:
        """Lead count per platform, largest first."""
        counts = self.df["platform"].value_counts()
        return counts.rename_axis("platform").reset_index(name="count")

    def status_breakdown(self) -> pd.DataFrame:
        counts = self.df["status"].value_counts()
        return counts.rename_axis("status").reset_index(name="count")

    def daily_activity(self, days: int = 7, now: Optional[datetime] = None) -> pd.DataFrame:
        """
        Leads added and DMs sent per day, oldest day first, ending today.
        """
        today = self._boundaries(now)["today"]
        added_days = self.df["added_at"].dt.normalize()
        dm_days = self.df["dm_sent_at"].dt.normalize()

        rows = []
        for offset in range(days - 1, -1, -1):
            day = today - pd.Timedelta(days=offset)
            rows.append(
                {
                    "date": day.date(),
                    "leads_added": int((added_days == day).sum()),
                    "dms_sent": int((dm_days == day).sum()),
                    "is_today": offset == 0,
                }
            )
        return pd.DataFrame(rows, columns=["date", "leads_added", "dms_sent", "is_today"])
