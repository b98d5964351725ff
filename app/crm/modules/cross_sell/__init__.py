"""Cross-sell rules and product suggestions."""
