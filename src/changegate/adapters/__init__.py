"""Adapters - Concrete implementations of the core protocols.

Import adapters from their own modules (changegate.adapters.filestore,
changegate.adapters.registry, ...) so that loading one does not pull in
the others' dependencies.
"""
