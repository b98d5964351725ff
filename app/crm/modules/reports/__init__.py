"""Reports: KPIs, lead breakdowns, team performance, CSV export."""
