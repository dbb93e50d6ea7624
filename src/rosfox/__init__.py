"""rosfox: rosbridge-style topics, services and parameters over Foxglove WebSocket."""

__version__ = "0.1.0"

from rosfox.codecs import RosfoxError, SchemaMissing
from rosfox.ros import Ros
from rosfox.session import FoxgloveSession

__all__ = ["FoxgloveSession", "Ros", "RosfoxError", "SchemaMissing", "__version__"]
