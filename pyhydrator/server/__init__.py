"""FastAPI network surface for the hydration orchestrator."""
