"""Session graph (LangGraph) wiring the driver and the dev-loop controller."""
