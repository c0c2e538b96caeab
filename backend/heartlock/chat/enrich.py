"""Attach participant and reply-target display data to stored messages."""
from typing import List

from .schemas import EnrichedMessage, Message, ReplyPreview
from .store import MessageStore
from .users import UserDirectory


def enrich_messages(
    messages: List[Message], store: MessageStore, users: UserDirectory
) -> List[EnrichedMessage]:
    """Resolve sender, receiver and reply previews for a batch of messages.

    A reply target that has since been deleted or expired yields
    ``replyTo=None``; the reply itself is still returned.
    """
    if not messages:
        return []

    reply_ids = [m.replyTo for m in messages if m.replyTo is not None]
    targets = store.get_many(reply_ids)

    user_ids = [m.sender for m in messages] + [m.receiver for m in messages]
    user_ids += [t.sender for t in targets.values()]
    profiles = users.summaries(user_ids)

    enriched = []
    for message in messages:
        reply = None
        target = targets.get(message.replyTo) if message.replyTo is not None else None
        if target is not None:
            reply = ReplyPreview(
                id=target.id,
                message=target.message,
                sender=profiles[target.sender],
            )
        enriched.append(EnrichedMessage(
            **message.model_dump(exclude={"sender", "receiver", "replyTo"}),
            sender=profiles[message.sender],
            receiver=profiles[message.receiver],
            replyTo=reply,
        ))
    return enriched


def enrich_message(message: Message, store: MessageStore, users: UserDirectory) -> EnrichedMessage:
    return enrich_messages([message], store, users)[0]
