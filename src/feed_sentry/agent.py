"""LangGraph assistant that drives Feed Sentry through its tools."""

import sqlite3
from typing import Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import SystemMessage, ToolMessage
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, MessagesState, StateGraph

SYSTEM_PROMPT = """You are Feed Sentry, an assistant that watches RSS and Atom feeds for the user.

You help users:
- Subscribe to feeds by URL and set how often they are polled
- Turn on alerts for every new item or only for items whose title matches keywords
- View, search and page through collected items
- Mark items as read or unread
- Sync feeds on demand instead of waiting for the schedule
- Bookmark items into favorites
- Enable or disable feeds, including feeds that were disabled after repeated failures

When a user wants to subscribe to a feed, use subscribe_to_feed with the URL they provide.
If a subscription fails because site access was not granted, offer to call grant_permission for that URL.
When a user asks to see items, news, or what's new, use get_items. Use keyword_filter to show only
items that match each feed's configured keywords.
When a user asks about their feeds, use list_feeds. A feed with status "disabled" is no longer polled;
use update_feed with active=true to re-enable it.
When a user wants to change alert settings, keywords or the polling interval, use update_feed.
When a user wants fresh items right away, use trigger_sync.
When a user wants to save an item for later, use add_favorite; list_favorites shows saved items.
When the user's intent is unclear, ask a clarifying question rather than guessing.
Present items in a readable format: title, link and date.
Be concise but informative in your responses."""


def create_agent(tools: list, checkpoint_db_path: str = "feed_sentry_checkpoints.db"):
    """Create and compile the LangGraph agent.

    Args:
        tools: Tool functions to bind to the agent, usually from build_tools().
        checkpoint_db_path: Path to SQLite database for LangGraph checkpointing.

    Returns:
        Compiled LangGraph agent.
    """
    model = ChatAnthropic(
        model="claude-sonnet-4-5-20250929",
        temperature=0,
    )

    if tools:
        model_with_tools = model.bind_tools(tools)
    else:
        model_with_tools = model

    tools_by_name = {tool.name: tool for tool in tools}

    def agent_node(state: MessagesState):
        """LLM call node: answer directly or request tool calls."""
        messages = [SystemMessage(content=SYSTEM_PROMPT)] + state["messages"]
        response = model_with_tools.invoke(messages)
        return {"messages": [response]}

    def tool_node(state: MessagesState):
        """Execute tool calls from the LLM response."""
        results = []
        last_message = state["messages"][-1]
        for tool_call in last_message.tool_calls:
            tool = tools_by_name[tool_call["name"]]
            result = tool.invoke(tool_call["args"])
            results.append(
                ToolMessage(content=str(result), tool_call_id=tool_call["id"])
            )
        return {"messages": results}

    def should_continue(state: MessagesState) -> Literal["tool_node", "__end__"]:
        last_message = state["messages"][-1]
        if last_message.tool_calls:
            return "tool_node"
        return END

    builder = StateGraph(MessagesState)
    builder.add_node("agent_node", agent_node)
    builder.add_node("tool_node", tool_node)

    builder.add_edge(START, "agent_node")
    builder.add_conditional_edges("agent_node", should_continue, ["tool_node", END])
    builder.add_edge("tool_node", "agent_node")

    checkpointer = SqliteSaver(sqlite3.connect(checkpoint_db_path, check_same_thread=False))
    return builder.compile(checkpointer=checkpointer)
