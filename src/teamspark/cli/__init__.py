"""``teamspark-jobs`` operator CLI."""
