"""
Run metrics shared by the orchestrator and the concurrency controller.
"""
