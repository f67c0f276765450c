"""Demo modules for showcasing serviceproxy behavior."""

from serviceproxy.demo.mock_service import MockService

__all__: list[str] = ["MockService"]
