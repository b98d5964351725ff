"""Lead management: leads, communication log, assignment and conversion."""
