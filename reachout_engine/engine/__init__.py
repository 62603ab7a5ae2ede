"""
Workflow execution engine: rendering, dispatch, enrollment, state machine
and scheduler.
"""
