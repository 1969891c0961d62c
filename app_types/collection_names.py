from enum import Enum

class CollectionName(str, Enum):
    DOCUMENTS = "documents"
    CONVERSATIONS = "conversations"
    EMAILS = "emails"

class DocumentType(str, Enum):
    PDF = "pdf"
    NOTE = "note"
    AUDIO = "audio"

class InsertPosition(str, Enum):
    PREPEND = "prepend"
    APPEND = "append"
