"""Background coordination: task pool, coordinator and scheduler."""
