"""
Pydantic models for the Discord REST payloads the client reads.

Only the fields the verification workflow uses are declared; Discord sends
many more and pydantic ignores them.  Validation failures are treated by the
client as an unexpected response from the service.
"""

from pydantic import BaseModel


class DiscordUser(BaseModel):
    """
    A Discord user object.

    Attributes:
        id: Snowflake id, kept as a string as Discord sends it.
        username: Unique account name (what players type to link).
        global_name: Optional display name.
    """

    id: str
    username: str
    global_name: str | None = None


class GuildMember(BaseModel):
    """
    A member of the configured guild.

    ``user`` is absent in some gateway payloads but always present in the
    REST responses used here.
    """

    user: DiscordUser | None = None
    nick: str | None = None
    roles: list[str] = []


class DMChannel(BaseModel):
    """A direct-message channel opened with ``POST /users/@me/channels``."""

    id: str


class DiscordErrorBody(BaseModel):
    """Error payload Discord returns alongside 4xx responses."""

    code: int = 0
    message: str = ""
