from pydantic import BaseModel


class FileEntry(BaseModel):
    name: str
    is_directory: bool
    permissions: str
    size: int = 0
    modified: str | None = None


class DirectoryListing(BaseModel):
    current_path: str
    entries: list[FileEntry]


class FileContent(BaseModel):
    path: str
    content: str
