from portfolio.models.collection import Collection, CollectionPhoto
from portfolio.models.photo import Photo

__all__ = [
    "Collection",
    "CollectionPhoto",
    "Photo",
]
