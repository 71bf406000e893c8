"""Queue consumers, dispatcher and background tasks."""
