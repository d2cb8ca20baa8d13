"""Tool result handling for the orchestrator.

Each executed tool call becomes two history entries: an assistant
``tool_use`` block and a user ``tool_result`` block. Both are persisted
as they are appended.
"""

import json
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import ConversationMessage, Product, ToolCallRequest, ToolErrorType, ToolResult

from orchestrator.conversation import MessageStore

logger = get_logger(__name__)

AUTH_REQUIRED_MESSAGE = (
    "You need to authorize the app to access your customer data. "
    "[Click here to authorize]({url})"
)


def result_text(content: Any) -> str:
    """
    Text handed back to the model for a successful tool call.

    MCP results carry ``{"content": [{"type": "text", "text": ...}]}``;
    anything else is passed on as JSON.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and isinstance(content.get("content"), list):
        texts = [
            item.get("text", "") for item in content["content"]
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(content)


def format_product(product: dict[str, Any], index: int = 0) -> Product:
    """Map a catalog search entry to a product card."""
    price_range = product.get("price_range")
    variants = product.get("variants") or []
    if isinstance(price_range, dict):
        price = f"{price_range.get('currency', '')} {price_range.get('min', '')}".strip()
    elif variants and isinstance(variants[0], dict):
        price = f"{variants[0].get('currency', '')} {variants[0].get('price', '')}".strip()
    else:
        price = "Price not available"

    return Product(
        id=str(product.get("product_id") or product.get("id") or f"product-{index}"),
        title=product.get("title") or "Product",
        price=price,
        image_url=product.get("image_url") or "",
        description=product.get("description") or "",
        url=product.get("url") or ""
    )


class ToolResultHandler:
    """Appends tool results to history and collects product cards."""

    def __init__(
        self,
        store: MessageStore,
        product_search_tool: str = "search_shop_catalog",
        max_products: int = 3
    ) -> None:
        self.store = store
        self.product_search_tool = product_search_tool
        self.max_products = max_products

    def extract_products(self, content: Any) -> list[Product]:
        """Product cards from a catalog search result (``content[0].text`` JSON)."""
        try:
            text = content["content"][0]["text"]
            data = json.loads(text)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
            logger.warning("Could not parse product search result", error=str(e))
            return []

        products = data.get("products") if isinstance(data, dict) else None
        if not isinstance(products, list):
            return []

        return [
            format_product(product, index)
            for index, product in enumerate(products[:self.max_products])
            if isinstance(product, dict)
        ]

    async def _append(
        self,
        conversation_id: str,
        history: list[ConversationMessage],
        role: str,
        blocks: list[dict[str, Any]]
    ) -> None:
        history.append(ConversationMessage(role=role, content=blocks))
        await self.store.save(conversation_id, role, blocks)

    async def _append_tool_use(
        self,
        call: ToolCallRequest,
        arguments: dict[str, Any],
        history: list[ConversationMessage],
        conversation_id: str,
        preamble: Optional[str]
    ) -> None:
        blocks: list[dict[str, Any]] = []
        if preamble:
            blocks.append({"type": "text", "text": preamble})
        blocks.append({
            "type": "tool_use",
            "id": call.id,
            "name": call.name,
            "input": arguments,
        })
        await self._append(conversation_id, history, "assistant", blocks)

    async def handle_success(
        self,
        call: ToolCallRequest,
        arguments: dict[str, Any],
        result: ToolResult,
        history: list[ConversationMessage],
        products: list[Product],
        conversation_id: str,
        preamble: Optional[str] = None
    ) -> None:
        """
        Record a successful call.

        Product-search results also extend ``products`` (capped at the
        display limit).
        """
        if call.name == self.product_search_tool:
            room = self.max_products - len(products)
            if room > 0:
                products.extend(self.extract_products(result.content)[:room])

        await self._append_tool_use(call, arguments, history, conversation_id, preamble)
        await self._append(conversation_id, history, "user", [{
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": result_text(result.content),
        }])

    async def handle_error(
        self,
        call: ToolCallRequest,
        arguments: dict[str, Any],
        result: ToolResult,
        history: list[ConversationMessage],
        conversation_id: str,
        preamble: Optional[str] = None
    ) -> None:
        """Record a failed call; auth errors carry the authorization link."""
        error = result.error
        if error.type == ToolErrorType.AUTH_REQUIRED:
            content = AUTH_REQUIRED_MESSAGE.format(url=error.data)
        else:
            content = error.data

        logger.info(
            "Tool call failed",
            tool=call.name,
            error_type=error.type.value,
            conversation_id=conversation_id
        )

        await self._append_tool_use(call, arguments, history, conversation_id, preamble)
        await self._append(conversation_id, history, "user", [{
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": content,
            "is_error": True,
        }])
