"""session-broker CLI subcommands."""
