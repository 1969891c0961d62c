from .collection_names import CollectionName, DocumentType, InsertPosition

__all__ = ["CollectionName", "DocumentType", "InsertPosition"]
