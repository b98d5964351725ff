"""Sales funnel / pipeline view."""
