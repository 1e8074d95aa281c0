"""Contracts package.

This package defines the *public* wire contract with upstream producers: the
event shape, its validation rules and the Redis key layout. The replay tool
and the feeds share types only via `relayer.contracts` and `relayer.core`.
"""
