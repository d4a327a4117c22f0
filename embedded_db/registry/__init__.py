"""
Single-flight registries: templates keyed by (scope, fingerprint), built at
most once per key and shared by every caller.
"""

__all__ = [
    'BuildRegistry',
    'BuildState',
    'RegistryEntry',
    'TemplateEntry',
    'TemplateRegistry',
    'default_template_registry',
]

from .template_registry import (
    BuildRegistry,
    BuildState,
    RegistryEntry,
    TemplateEntry,
    TemplateRegistry,
    default_template_registry,
)
