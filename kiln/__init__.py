"""Kiln — on-demand function synthesis with a sandboxed runtime.

A host asks for a function by name and description; Kiln has an oracle model
write it, validates and repairs the source, stores it, and later runs it
against an explicit allow-list of capabilities.
"""

__version__ = "0.1.0"
