"""Rate limiting storage adapters.

Shared state lives in Redis so limits hold across instances; a process-local
store takes over whenever Redis cannot answer.
"""
