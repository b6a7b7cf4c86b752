"""LLM library - Claude client used by the triage pipeline."""
