"""Indexing of social feed posts, reactions, tips and their quests."""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .handler_base import ExecuteContractMsg, HandlerError, Message
from .models import Post, QuestCompletion

_MAX_UINT32 = 2**32 - 1

_QUESTS_BY_CATEGORY = {
    1: "social_feed_first_comment",
    2: "social_feed_first_post",
    3: "social_feed_first_article",
    4: "social_feed_first_picture",
    5: "social_feed_first_audio",
    6: "social_feed_first_video",
    7: "social_feed_first_ai_generation",
}

TIP_QUEST_ID = "social_feed_tip_content_creator"


def _decode(raw: Any, what: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as err:
        raise HandlerError(f"failed to unmarshal {what}: {err}") from err
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise HandlerError(f"failed to unmarshal {what}: not a JSON object")
    return data


def _sub(obj: Dict[str, Any], key: str, what: str) -> Dict[str, Any]:
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not an object")
    return value


def _text(obj: Dict[str, Any], key: str, what: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not a string")
    return value


def _flag(obj: Dict[str, Any], key: str, what: str) -> bool:
    value = obj.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not a bool")
    return value


def _uint32(obj: Dict[str, Any], key: str, what: str) -> int:
    value = obj.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _MAX_UINT32:
        raise HandlerError(f"failed to unmarshal {what}: {key} is not a uint32")
    return value


def remove_user_from_list(users: List[str], user: str) -> List[str]:
    """Return ``users`` without any occurrence of ``user``."""
    return [item for item in users if item != user]


@dataclass(frozen=True)
class CreatePostMsg:
    """The payload of a ``create_post`` or ``create_post_by_bot`` execution."""

    identifier: str
    parent_post_identifier: str = ""
    category: int = 0
    metadata: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], what: str) -> "CreatePostMsg":
        return cls(
            identifier=_text(data, "identifier", what),
            parent_post_identifier=_text(data, "parent_post_identifier", what),
            category=_uint32(data, "category", what),
            metadata=_text(data, "metadata", what),
        )


class FeedMixin:
    """Handlers for the social feed contract.

    Meant to be combined with :class:`furyadapp.handler_base.HandlerBase`,
    which provides ``session``, ``config``, ``network`` and ``logger``.
    """

    def _feed_flush(self, what: str) -> None:
        try:
            self.session.flush()
        except SQLAlchemyError as err:
            self.session.rollback()
            raise HandlerError(f"failed to {what}: {err}") from err

    def _get_post(self, identifier: str, what: str) -> Post:
        post: Optional[Post] = self.session.get(Post, identifier)
        if post is None:
            raise HandlerError(f"failed to get post to {what}: {identifier!r} not found")
        return post

    def handle_execute_delete_post(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Mark a post as deleted."""
        what = "execute delete post msg"
        payload = _sub(_decode(exec_msg.msg, what), "delete_post", what)
        post = self._get_post(_text(payload, "identifier", what), "delete")
        post.is_deleted = True
        self._feed_flush("set deleted to post")

    def handle_execute_react_post(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Add or remove the sender's reaction with an icon on a post."""
        what = "execute react post msg"
        payload = _sub(_decode(exec_msg.msg, what), "react_post", what)
        identifier = _text(payload, "identifier", what)
        icon = _text(payload, "icon", what)
        up = _flag(payload, "up", what)

        post = self._get_post(identifier, "react")
        reactions = dict(post.user_reactions or {})
        reacted = reactions.get(icon, [])
        if not isinstance(reacted, list) or not all(isinstance(u, str) for u in reacted):
            raise HandlerError(f"invalid reactions stored for icon {icon!r}")
        users = list(reacted)

        # The contract has already validated the reaction.
        user = self.network.user_id(exec_msg.sender)
        if up:
            users.append(user)
        else:
            users = remove_user_from_list(users, user)

        if users:
            reactions[icon] = users
        else:
            reactions.pop(icon, None)
        post.user_reactions = reactions
        self._feed_flush("update reactions")

    def handle_execute_create_post_by_bot(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Index a post created by a bot."""
        what = "execute create post by bot msg"
        payload = _sub(_decode(exec_msg.msg, what), "create_post_by_bot", what)
        self.create_post(message, exec_msg, CreatePostMsg.from_dict(payload, what), True)

    def handle_execute_create_post(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Index a post created on the network's social feed contract."""
        if exec_msg.contract != self.network.social_feed_contract_address:
            self.logger.debug(
                "ignored create post for unknown contract %s in tx %s",
                exec_msg.contract,
                message.tx_hash,
            )
            return
        what = "execute create post msg"
        payload = _sub(_decode(exec_msg.msg, what), "create_post", what)
        self.create_post(message, exec_msg, CreatePostMsg.from_dict(payload, what), False)

    def create_post(
        self,
        message: Message,
        exec_msg: ExecuteContractMsg,
        create_post_msg: CreatePostMsg,
        is_bot: bool,
    ) -> None:
        """Store a new post and, for people, complete the matching quest."""
        metadata = _decode(create_post_msg.metadata, "metadata")
        try:
            created_at: datetime = message.get_block_time()
        except Exception as err:
            raise HandlerError(f"failed to get block time: {err}") from err

        self.session.add(
            Post(
                identifier=create_post_msg.identifier,
                parent_post_identifier=create_post_msg.parent_post_identifier,
                category=create_post_msg.category,
                post_metadata=metadata,
                user_reactions={},
                author_id=self.network.user_id(exec_msg.sender),
                created_at=int(created_at.timestamp()),
                is_bot=is_bot,
            )
        )
        self._feed_flush("create post")

        if not is_bot:
            try:
                self.handle_quests(exec_msg, create_post_msg)
            except HandlerError as err:
                self.logger.error("failed to handle post quests: %s", err)

    def handle_execute_tip_post(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Add the sent funds to a post's tips and complete the tip quest."""
        what = "execute tip post msg"
        payload = _sub(_decode(exec_msg.msg, what), "tip_post", what)
        identifier = _text(payload, "identifier", what)

        post = self.session.get(Post, identifier)
        if post is None:
            raise HandlerError(f"post not found: {identifier!r}")
        if not exec_msg.funds:
            raise HandlerError("no funds sent with tip")

        post.tip_amount = (post.tip_amount or 0) + int(exec_msg.funds[0].amount)
        self._feed_flush("update tip amount")

        self.session.merge(
            QuestCompletion(
                user_id=self.network.user_id(exec_msg.sender),
                quest_id=TIP_QUEST_ID,
                completed=True,
            )
        )
        self._feed_flush(f"save {TIP_QUEST_ID} quest completion")

    def handle_quests(
        self, exec_msg: ExecuteContractMsg, create_post_msg: CreatePostMsg
    ) -> None:
        """Complete the first-post quest that matches the post's category."""
        quest_id = _QUESTS_BY_CATEGORY.get(create_post_msg.category)
        if quest_id is None:
            return
        self.session.merge(
            QuestCompletion(
                user_id=self.network.user_id(exec_msg.sender),
                quest_id=quest_id,
                completed=True,
            )
        )
        self._feed_flush("save quest completion")