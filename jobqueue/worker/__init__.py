"""
Worker module.
Contains the job worker, handler interface, and retry policy.
"""
