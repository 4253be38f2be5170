# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Dependency resolution for services to determine startup and shutdown order.
"""
import heapq
from typing import List, Dict, Sequence
from ..errors import CyclicDependencyError, UnknownReferenceError


class DependencyResolver:
    """
    Resolves the startup order of services from their depends_on edges.

    The graph is given as a mapping of service name to dependency names, in
    declaration order. Ties are always broken by declaration order so that the
    same topology produces the same order on every run.
    """
    def __init__(self, graph: Dict[str, Sequence[str]]):
        """
        :param graph: Service name -> names it depends on, in declaration order.
        """
        self.graph = {name: list(deps) for name, deps in graph.items()}
        self.position = {name: index for index, name in enumerate(self.graph)}

    def check_references(self) -> None:
        """
        Raises UnknownReferenceError for the first dependency that is not declared.
        """
        for name, deps in self.graph.items():
            for dep in deps:
                if dep not in self.graph:
                    raise UnknownReferenceError(dep, kind="service", referrer=name)

    def resolve_order(self) -> List[str]:
        """
        Topological sort using Kahn's algorithm.

        :return: Service names, every service after all of its dependencies.
        :raises CyclicDependencyError: If the graph has a cycle; the cycle is named.
        """
        self.check_references()

        indegree = {name: len(set(deps)) for name, deps in self.graph.items()}
        dependents: Dict[str, List[str]] = {name: [] for name in self.graph}
        for name, deps in self.graph.items():
            for dep in set(deps):
                dependents[dep].append(name)

        ready = [(self.position[name], name) for name, count in indegree.items() if count == 0]
        heapq.heapify(ready)

        ordered = []
        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(name)
            for dependent in dependents[name]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, (self.position[dependent], dependent))

        if len(ordered) != len(self.graph):
            remaining = [name for name in self.graph if name not in set(ordered)]
            raise CyclicDependencyError(self.find_cycle(remaining))
        return ordered

    def resolve_waves(self) -> List[List[str]]:
        """
        Groups services into startup waves.

        Every service in wave N depends only on services in earlier waves, so
        the members of one wave can be started concurrently.
        """
        level: Dict[str, int] = {}
        for name in self.resolve_order():
            deps = self.graph[name]
            level[name] = 1 + max((level[d] for d in deps), default=-1)

        waves: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for name in self.graph:
            waves[level[name]].append(name)
        return waves

    def find_cycle(self, candidates: List[str]) -> List[str]:
        """
        Finds one cycle among ``candidates`` (nodes Kahn's algorithm could not place).

        :return: The cycle as a path whose first and last element are the same service.
        """
        visiting: List[str] = []
        done = set()

        def visit(name):
            if name in visiting:
                return visiting[visiting.index(name):] + [name]
            if name in done:
                return None
            visiting.append(name)
            for dep in self.graph.get(name, []):
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            done.add(name)
            return None

        for name in candidates:
            cycle = visit(name)
            if cycle:
                return cycle
        return candidates
