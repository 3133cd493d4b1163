"""genqueue - ticket-metered generation admission queue."""
