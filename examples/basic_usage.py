#!/usr/bin/env python3
"""
Basic Usage Examples for Adaptive Chat

This script walks through tracking, context analysis, suggestions and
sessions using the in-memory store.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path so we can import the package modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from adaptive_chat.behavior_tracker import BehaviorTracker
from adaptive_chat.context_analyzer import ContextAnalyzer
from adaptive_chat.models import Message, PrivacySettings
from adaptive_chat.session_manager import SessionManager
from adaptive_chat.storage import InMemoryKeyValueStore
from adaptive_chat.suggestion_engine import SuggestionEngine

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


async def example_behavior_tracking(tracker: BehaviorTracker):
    """Example: consent-gated interaction tracking"""
    print("📊 Example 1: Behavior Tracking")
    print("=" * 40)

    consent = PrivacySettings(data_collection=True, analytics=True)
    for length in (40, 180, 220, 95, 150):
        await tracker.track_interaction(
            "example_user",
            {"type": "message_sent", "data": {"messageLength": length, "theme": "dark"}},
            consent,
        )

    patterns = await tracker.analyze_user_behavior("example_user")
    for pattern in patterns:
        print(f"  {pattern.type.value}: {pattern.pattern} ({pattern.confidence:.2f})")
    print()


async def example_context_analysis(analyzer: ContextAnalyzer):
    """Example: context, shifts and response style"""
    print("🧭 Example 2: Context Analysis")
    print("=" * 40)

    messages = [
        Message(role="user", content="Help with CSS grid"),
        Message(role="assistant", content="Here's how grid works"),
        Message(role="user", content="Actually I think this is flexbox"),
    ]

    context = await analyzer.analyze_context(messages)
    print(f"Topics: {context.topics}")
    print(f"Sentiment: {context.sentiment}, expertise: {context.expertise_level}")

    for shift in await analyzer.detect_context_shifts(messages):
        print(f"Shift at message {shift.message_index}: {shift.from_topic} -> {shift.to_topic} ({shift.shift_type.value})")

    style = analyzer.get_adapted_response_style(context)
    print(f"Suggested tone: {style.tone}, detail: {style.detail_level}")
    print()
    return messages


async def example_suggestions(engine: SuggestionEngine, messages):
    """Example: quick replies and feedback"""
    print("💡 Example 3: Suggestions")
    print("=" * 40)

    replies = await engine.generate_quick_replies(
        messages + [Message(role="user", content="I still get an error, can you help?")],
        "example_conversation",
        user_id="example_user",
    )
    for reply in replies:
        print(f"  [{reply.adjusted_confidence:.2f}] {reply.content}")

    if replies:
        await engine.track_suggestion_feedback("example_user", replies[0].id, used=True, helpful=True)
    print()


async def example_sessions(manager: SessionManager):
    """Example: session lifecycle and cross-device merge"""
    print("🔁 Example 4: Sessions")
    print("=" * 40)

    desktop = await manager.create_session("example_user", {"theme": "dark"})
    await manager.update_session_activity("example_user", "message_sent")
    await manager.sync_behavior_patterns("example_user")
    await manager.end_active_session("example_user")

    mobile = await manager.create_session(
        "example_user", user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile Safari"
    )
    merged = await manager.merge_sessions("example_user", [desktop, mobile])
    print(f"Merged session devices: {merged.metadata.device_types}")
    print(f"Interactions: {merged.interaction_count}")

    metrics = manager.get_session_metrics("example_user")
    print(f"Total sessions: {metrics.total_sessions}, most active: {metrics.most_active_time_of_day}")
    print()


async def main():
    """Run all examples"""
    print("🚀 Adaptive Chat - Basic Usage Examples")
    print("=" * 60)
    print()

    store = InMemoryKeyValueStore()
    tracker = BehaviorTracker(store=store)
    analyzer = ContextAnalyzer(store=store)
    engine = SuggestionEngine()
    manager = SessionManager(store=store, tracker=tracker, analyzer=analyzer)

    await example_behavior_tracking(tracker)
    messages = await example_context_analysis(analyzer)
    await example_suggestions(engine, messages)
    await example_sessions(manager)

    await manager.stop()
    print("🎉 All examples completed!")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Examples interrupted")
