"""renderq command-line interface (``renderq``)."""
