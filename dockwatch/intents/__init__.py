"""Auto-upgrade intents: cron due-ness, persistence, execution and evaluation."""
