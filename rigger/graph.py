"""
Explicit dependency graph over resource descriptors.
"""

from typing import Dict, Iterable, List, Set

from .models import ResourceDescriptor


class DependencyError(ValueError):
    """Raised for unknown prerequisites or dependency cycles."""


class ResourceGraph:
    """Descriptors plus their declared prerequisites."""

    def __init__(self, descriptors: Iterable[ResourceDescriptor]):
        self.descriptors: Dict[str, ResourceDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self.descriptors:
                raise DependencyError(f"Duplicate resource name: {descriptor.name}")
            self.descriptors[descriptor.name] = descriptor

        for descriptor in self.descriptors.values():
            for prerequisite in self.prerequisites(descriptor.name):
                if prerequisite not in self.descriptors:
                    raise DependencyError(f"{descriptor.name} depends on unknown resource {prerequisite}")

        self._layers = self._compute_layers()

    def prerequisites(self, name: str) -> List[str]:
        """Declared dependencies plus any resource referenced through a Ref."""
        descriptor = self.descriptors[name]
        names = list(descriptor.depends_on)
        for ref in descriptor.refs():
            if ref.name not in names:
                names.append(ref.name)
        return names

    def dependents(self, name: str) -> List[str]:
        """Resources that list name as a prerequisite."""
        return [other for other in self.descriptors if name in self.prerequisites(other)]

    def transitive_dependents(self, name: str) -> Set[str]:
        found: Set[str] = set()
        stack = [name]
        while stack:
            current = stack.pop()
            for dependent in self.dependents(current):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def _compute_layers(self) -> List[List[str]]:
        # Kahn's algorithm, keeping declaration order inside each layer
        remaining = {name: set(self.prerequisites(name)) for name in self.descriptors}
        layers: List[List[str]] = []
        done: Set[str] = set()

        while remaining:
            ready = [name for name, deps in remaining.items() if deps <= done]
            if not ready:
                raise DependencyError(f"Dependency cycle among: {', '.join(sorted(remaining))}")
            layers.append(ready)
            for name in ready:
                del remaining[name]
            done.update(ready)

        return layers

    def layers(self) -> List[List[ResourceDescriptor]]:
        """Forward order: each layer only depends on earlier layers."""
        return [[self.descriptors[name] for name in layer] for layer in self._layers]

    def select(self, names: Iterable[str]) -> List[ResourceDescriptor]:
        """Descriptors for names, in forward dependency order."""
        wanted = set(names)
        return [d for layer in self.layers() for d in layer if d.name in wanted]

    def check_teardown_tiers(self, tiers: Dict) -> None:
        """
        Verify that a kind-based teardown order never deletes a prerequisite
        before one of its dependents.

        Raises:
            DependencyError: If some dependent is torn down after its prerequisite
        """
        for descriptor in self.descriptors.values():
            for prerequisite in self.prerequisites(descriptor.name):
                upstream = self.descriptors[prerequisite]
                if tiers[descriptor.kind] > tiers[upstream.kind]:
                    raise DependencyError(
                        f"Teardown order deletes {upstream.name} ({upstream.kind.value}) "
                        f"before its dependent {descriptor.name} ({descriptor.kind.value})"
                    )
