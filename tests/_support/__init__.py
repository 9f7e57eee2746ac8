"""
Test support utilities for renderq tests.

Helpers that are not pytest fixtures but are shared across test files:
scripted render collaborators, payload builders and polling helpers.
"""
