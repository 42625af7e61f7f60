"""Agent runtime: turn orchestration, pooling, context and memory."""
