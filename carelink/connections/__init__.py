"""Connection-request lifecycle: repository, state machine, pending-view sync."""
