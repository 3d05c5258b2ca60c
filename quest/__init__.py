"""Quest core — crowd-voted branching narratives driven by delayed tasks."""
