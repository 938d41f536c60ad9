"""JSON-based storage for conversations."""

import json
import os
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
from pathlib import Path

from . import config
from .providers import Turn, ROLE_USER, ROLE_ASSISTANT


def ensure_data_dir():
    """Ensure the data directory exists."""
    Path(config.DATA_DIR).mkdir(parents=True, exist_ok=True)


def get_conversation_path(conversation_id: str) -> str:
    """Get the file path for a conversation."""
    return os.path.join(config.DATA_DIR, f"{conversation_id}.json")


def create_conversation(conversation_id: str) -> Dict[str, Any]:
    """
    Create a new conversation.

    Args:
        conversation_id: Unique identifier for the conversation

    Returns:
        New conversation dict
    """
    conversation = {
        "id": conversation_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "title": "New Conversation",
        "messages": []
    }
    save_conversation(conversation)
    return conversation


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    """
    Load a conversation from storage.

    Returns:
        Conversation dict or None if not found
    """
    path = get_conversation_path(conversation_id)

    if not os.path.exists(path):
        return None

    with open(path, 'r') as f:
        return json.load(f)


def save_conversation(conversation: Dict[str, Any]):
    ensure_data_dir()

    path = get_conversation_path(conversation['id'])
    with open(path, 'w') as f:
        json.dump(conversation, f, indent=2)


def list_conversations() -> List[Dict[str, Any]]:
    """
    List all conversations (metadata only), newest first.
    """
    ensure_data_dir()

    conversations = []
    for filename in os.listdir(config.DATA_DIR):
        if filename.endswith('.json'):
            path = os.path.join(config.DATA_DIR, filename)
            with open(path, 'r') as f:
                data = json.load(f)
                conversations.append({
                    "id": data["id"],
                    "created_at": data["created_at"],
                    "title": data.get("title", "New Conversation"),
                    "message_count": len(data["messages"])
                })

    conversations.sort(key=lambda x: x["created_at"], reverse=True)

    return conversations


def _load_or_raise(conversation_id: str) -> Dict[str, Any]:
    conversation = get_conversation(conversation_id)
    if conversation is None:
        raise ValueError(f"Conversation {conversation_id} not found")
    return conversation


def add_user_message(conversation_id: str, content: str):
    conversation = _load_or_raise(conversation_id)
    conversation["messages"].append({
        "role": ROLE_USER,
        "content": content
    })
    save_conversation(conversation)


def add_assistant_message(
    conversation_id: str,
    content: str,
    metadata: Dict[str, Any] = None
):
    """
    Add the assistant reply (final synthesis or error text) to a conversation.

    Args:
        conversation_id: Conversation identifier
        content: Text shown to the user
        metadata: Status, provider and model for the request
    """
    conversation = _load_or_raise(conversation_id)
    conversation["messages"].append({
        "role": ROLE_ASSISTANT,
        "content": content,
        "metadata": metadata or {}
    })
    save_conversation(conversation)


def update_conversation_title(conversation_id: str, title: str):
    conversation = _load_or_raise(conversation_id)
    conversation["title"] = title
    save_conversation(conversation)


def delete_conversation(conversation_id: str):
    """
    Delete a conversation from storage.

    Raises:
        ValueError: If the conversation does not exist
    """
    path = get_conversation_path(conversation_id)
    if os.path.exists(path):
        os.remove(path)
    else:
        raise ValueError(f"Conversation {conversation_id} not found")


def conversation_history(conversation: Dict[str, Any]) -> List[Turn]:
    """Convert stored messages into pipeline turns."""
    history = []
    for msg in conversation.get("messages", []):
        role = msg.get("role")
        content = msg.get("content", "")
        if role not in (ROLE_USER, ROLE_ASSISTANT) or not content:
            continue
        history.append(Turn(role, content))
    return history
