from pydantic import BaseModel


class PlayerList(BaseModel):
    online: int
    max: int
    players: list[str]
