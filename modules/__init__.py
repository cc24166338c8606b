"""
Pulumi modules for the secure platform
Simple function-based approach: each module declares resources and returns outputs

The dependency graph below mirrors the order in which __main__.py wires the
modules together. Pulumi resolves resource ordering itself from Output
references; this table only documents and checks the module-level shape.
"""

from typing import Dict, List, Tuple


MODULE_DEPENDENCIES: Dict[str, Tuple[str, ...]] = {
    "network": (),
    "security": ("network",),
    "iam": (),
    "eks": ("network", "security", "iam"),
    "rds": ("network", "security"),
    "redis": ("network", "security"),
    "alb": ("eks",),
    "ecr": ("eks", "security"),
    "logging": ("eks", "network"),
    "policy": ("eks",),
    "vault": ("eks", "security"),
}


def deployment_order(dependencies: Dict[str, Tuple[str, ...]] = None) -> List[str]:
    """
    Return module names so that every module comes after its dependencies

    Ties are broken by declaration order, so the result is stable.

    Raises:
        ValueError: on a dependency that is not declared, or on a cycle
    """
    dependencies = MODULE_DEPENDENCIES if dependencies is None else dependencies

    for name, deps in dependencies.items():
        unknown = [dep for dep in deps if dep not in dependencies]
        if unknown:
            raise ValueError(f"Module '{name}' depends on undeclared modules: {unknown}")

    order = []
    placed = set()
    while len(order) < len(dependencies):
        ready = [name for name, deps in dependencies.items()
                 if name not in placed and all(dep in placed for dep in deps)]
        if not ready:
            remaining = sorted(set(dependencies) - placed)
            raise ValueError(f"Dependency cycle between modules: {remaining}")
        # Take one at a time to keep declaration order among peers
        order.append(ready[0])
        placed.add(ready[0])
    return order


def dependents_of(name: str, dependencies: Dict[str, Tuple[str, ...]] = None) -> List[str]:
    """Modules that depend on `name`, directly or transitively, in deployment order"""
    dependencies = MODULE_DEPENDENCIES if dependencies is None else dependencies
    if name not in dependencies:
        raise ValueError(f"Unknown module: {name}")

    affected = {name}
    changed = True
    while changed:
        changed = False
        for module, deps in dependencies.items():
            if module not in affected and affected.intersection(deps):
                affected.add(module)
                changed = True

    return [module for module in deployment_order(dependencies)
            if module in affected and module != name]


__all__ = [
    "MODULE_DEPENDENCIES",
    "deployment_order",
    "dependents_of",
]
