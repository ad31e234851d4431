from pydantic import BaseModel


class EmailVariant(BaseModel):
    id: int
    description: str
    html: str
