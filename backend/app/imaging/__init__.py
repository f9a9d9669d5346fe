"""Image generation orchestration: operations, provider polling, lineage, recording."""
