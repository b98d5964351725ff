"""KRA/KPA definitions, targets and achievement."""
