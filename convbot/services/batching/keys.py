from dataclasses import dataclass


DOMAIN_USER = "user"
DOMAIN_ALBUM = "album"
DOMAIN_MANUAL = "manual"
DOMAINS = (DOMAIN_USER, DOMAIN_ALBUM, DOMAIN_MANUAL)


@dataclass(frozen=True)
class CollectionKey:
    """
    Identity of one file collection.
    user:   loose files from one user
    album:  one platform media group
    manual: a collection opened with an expected file count
    """
    domain: str
    user_id: str
    group_id: str = ""

    def __post_init__(self):
        if self.domain not in DOMAINS:
            raise ValueError(f"unknown collection domain: {self.domain}")
        if not self.user_id:
            raise ValueError("user_id is required")
        if (self.domain == DOMAIN_ALBUM) != bool(self.group_id):
            raise ValueError("group_id is required for album keys and only for them")

    @classmethod
    def for_user(cls, user_id: str) -> "CollectionKey":
        return cls(DOMAIN_USER, str(user_id))

    @classmethod
    def for_album(cls, user_id: str, media_group_id: str) -> "CollectionKey":
        return cls(DOMAIN_ALBUM, str(user_id), str(media_group_id))

    @classmethod
    def for_manual(cls, user_id: str) -> "CollectionKey":
        return cls(DOMAIN_MANUAL, str(user_id))

    @classmethod
    def parse(cls, value: str) -> "CollectionKey":
        domain, _, rest = value.partition(":")
        user_id, _, group_id = rest.partition(":")
        return cls(domain, user_id, group_id)

    @property
    def is_album(self) -> bool:
        return self.domain == DOMAIN_ALBUM

    @property
    def is_manual(self) -> bool:
        return self.domain == DOMAIN_MANUAL

    def __str__(self) -> str:
        if self.group_id:
            return f"{self.domain}:{self.user_id}:{self.group_id}"
        return f"{self.domain}:{self.user_id}"
