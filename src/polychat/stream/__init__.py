"""Think-tag splitting and publish throttling."""

from polychat.stream.tags import ThinkTagSplitter, split_think_tags
from polychat.stream.throttle import PublishThrottle

__all__ = ["PublishThrottle", "ThinkTagSplitter", "split_think_tags"]
