# Fake implementations for testing

from .fake_azure import FakeCloud, FakeService

__all__ = ["FakeCloud", "FakeService"]
