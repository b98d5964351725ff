"""XP, levels, badges and leaderboard."""
