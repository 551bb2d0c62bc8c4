import random
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RouteInfo:
    """
    A route vehicles can be injected on.

    Attributes:
        route_id (str): Id the route is registered under in SUMO.
        edges (tuple[str, ...]): Ordered edge ids the route traverses.
        display_name (str): Human readable label for pickers.
    """

    route_id: str
    edges: tuple[str, ...]
    display_name: str

    def __str__(self) -> str:
        return self.display_name


class RouteCatalog:
    """Read-only list of available routes, loaded once and shared by reference."""

    def __init__(self, routes: list[RouteInfo]):
        ids = [r.route_id for r in routes]
        if len(ids) != len(set(ids)):
            raise ValueError("Route ids must be unique.")
        self._routes: tuple[RouteInfo, ...] = tuple(routes)

    def __len__(self) -> int:
        return len(self._routes)

    def __iter__(self):
        return iter(self._routes)

    def is_empty(self) -> bool:
        return not self._routes

    @property
    def routes(self) -> tuple[RouteInfo, ...]:
        return self._routes

    def route_ids(self) -> list[str]:
        return [r.route_id for r in self._routes]

    def get(self, index: int) -> RouteInfo:
        """Route at a picker index. Raises IndexError for out-of-range or negative indices."""
        if index < 0 or index >= len(self._routes):
            raise IndexError(
                f"Route index {index} out of range (0..{len(self._routes) - 1})."
            )
        return self._routes[index]

    def random_route(self, rng: random.Random) -> RouteInfo:
        """Uniformly random route. The catalog must not be empty."""
        return self._routes[rng.randrange(len(self._routes))]

    @classmethod
    def from_route_file(cls, path: str | Path) -> "RouteCatalog":
        """
        Build a catalog from the inline <route> of every <vehicle> in a SUMO .rou.xml.

        The route id is derived from the vehicle id ("r_<vehicle id>") so it does not
        clash with routes SUMO already loaded from the same file.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Route file not found: {path}")

        root = ET.parse(path).getroot()
        routes: list[RouteInfo] = []
        for vehicle in root.iter("vehicle"):
            vehicle_id = (vehicle.get("id") or "").strip()
            route = vehicle.find("route")
            if not vehicle_id or route is None:
                continue

            edges = tuple((route.get("edges") or "").split())
            if not edges:
                continue

            routes.append(
                RouteInfo(
                    route_id=f"r_{vehicle_id}",
                    edges=edges,
                    display_name=f"Route {len(routes) + 1}",
                )
            )

        if not routes:
            raise ValueError(f"No routes found in route file: {path}")

        return cls(routes)
