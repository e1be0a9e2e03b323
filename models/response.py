from pydantic import BaseModel

class BasicResponse(BaseModel):
    message: str

class AddedResponse(BasicResponse):
    added: int

class MarkReadResponse(BasicResponse):
    marked: int

class UnreadCountResponse(BaseModel):
    unread_count: int
