"""
Model mixins shared by Stride entities.
"""

from stride.models.mixins.guid import GuidMixin, UUIDType

__all__ = ["GuidMixin", "UUIDType"]
