"""
Worker module.
Contains handler dispatch, worker pools and the worker process.
"""
