"""Copy confirmation engine, report writers and desktop panel."""
