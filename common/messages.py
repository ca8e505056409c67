from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

# Envelope fields are plaintext routing data; only record fields are ever encrypted.
@dataclass
class Envelope:
    type: str            # "subscribe" | "unsubscribe" | "push" | "child_added" | "config" | "system" | "error"
    sender: Optional[str]
    to: Optional[str]    # subscription id for child_added, else None
    ts: str              # ISO 8601
    payload: Dict[str, Any]


class MalformedRecordError(ValueError):
    """Raised when a stored value is not a valid chat record."""
    pass


# Field names as stored in the shared log
TEXT_KEY = "text"
NAME_KEY = "name"
PHOTO_KEY = "photoUrl"


@dataclass(frozen=True)
class MessageRecord:
    '''
    One chat entry: either a text or a photo URL, plus who sent it.
    Exactly one of text / photo_url is set.
    '''
    sender_name: str
    text: Optional[str] = None
    photo_url: Optional[str] = None

    def __post_init__(self):
        if (self.text is None) == (self.photo_url is None):
            raise MalformedRecordError("record must carry exactly one of text or photoUrl")

    @property
    def is_photo(self) -> bool:
        return self.photo_url is not None

    def to_dict(self) -> Dict[str, str]:
        ''' Wire form; absent fields are left out '''
        d = {NAME_KEY: self.sender_name}
        if self.text is not None:
            d[TEXT_KEY] = self.text
        if self.photo_url is not None:
            d[PHOTO_KEY] = self.photo_url
        return d

    @classmethod
    def from_dict(cls, value: Any) -> "MessageRecord":
        '''
        Build a record from its wire form.
        Raises MalformedRecordError for anything that isn't a well-formed record.
        '''
        if not isinstance(value, dict):
            raise MalformedRecordError(f"record must be an object, got {type(value).__name__}")
        name = value.get(NAME_KEY)
        if not isinstance(name, str):
            raise MalformedRecordError("record has no sender name")
        text, photo = value.get(TEXT_KEY), value.get(PHOTO_KEY)
        for field in (text, photo):
            if field is not None and not isinstance(field, str):
                raise MalformedRecordError("record fields must be strings")
        return cls(sender_name=name, text=text, photo_url=photo)

    def map_fields(self, fn: Callable[[str], str]) -> "MessageRecord":
        '''
        Apply fn to the sender name and to whichever payload is present.
        Used for both the encrypt and decrypt direction.
        '''
        if self.text is not None:
            return replace(self, sender_name=fn(self.sender_name), text=fn(self.text))
        return replace(self, sender_name=fn(self.sender_name), photo_url=fn(self.photo_url))
