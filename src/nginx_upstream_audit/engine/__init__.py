"""Engine package - static resolution of backend references."""

from nginx_upstream_audit.engine.bindings import BindingStore, build_binding_store
from nginx_upstream_audit.engine.normalizer import TargetNormalizer
from nginx_upstream_audit.engine.resolver import VariableResolver

__all__ = ["BindingStore", "TargetNormalizer", "VariableResolver", "build_binding_store"]
