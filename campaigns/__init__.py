"""
Batch runs: input loading, report writing and end-to-end wiring.
"""
