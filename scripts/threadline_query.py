#!/usr/bin/env python3
"""
Query contacts and conversations from the command line.

Uses the same settings (.env / THREADLINE_* variables) as the API server.
"""
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import logging

from dotenv import load_dotenv

from api.services.message_engine import CountEntity, MessageEngine, create_engine
from api.utils.datetime_utils import parse_datetime

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def print_resolution(engine: MessageEngine, query: str) -> None:
    resolution = engine.resolve_contact(query)
    print(f"\n{resolution.status.upper()} for '{query}'")
    for match in resolution.matches:
        identity = match.identity
        print(f"  ID: {identity.key}")
        print(f"  Name: {identity.display_name}")
        print(f"  Identifiers: {', '.join(identity.raw_identifiers)}")
        print(f"  Source: {identity.provenance} (confidence {match.confidence:.2f})")
        print()
    if resolution.clarification:
        print(resolution.clarification)


def print_conversations(engine: MessageEngine, contact_id: str, args, start, end) -> None:
    result = engine.get_conversations(
        contact_id,
        start=start,
        end=end,
        conversation_limit=args.conversations,
        message_limit=args.messages,
    )
    print(f"\n{result.detail}")
    for conversation in result.conversations:
        names = ", ".join(p.name for p in conversation.participants)
        print(f"\n[{conversation.conversation_id}] {names}")
        for message in conversation.messages:
            at = message.sent_at.strftime("%Y-%m-%d %H:%M") if message.sent_at else "?"
            print(f"  {at}  {message.sender}: {message.text}")


def main():
    parser = argparse.ArgumentParser(description='Query contacts and iMessage conversations')
    parser.add_argument('--resolve', help='Resolve a name, phone number or email')
    parser.add_argument('--conversations-with', help='Contact id or phone/email to show conversations for')
    parser.add_argument('--count', choices=[e.value for e in CountEntity], help='Count an entity')
    parser.add_argument('--contact', help='Contact id for contact-scoped counts')
    parser.add_argument('--after', help='Start date (YYYY-MM-DD or ISO format)')
    parser.add_argument('--before', help='End date (YYYY-MM-DD or ISO format)')
    parser.add_argument('--conversations', type=int, help='Maximum conversations (default THREADLINE_CONVERSATION_LIMIT)')
    parser.add_argument('--messages', type=int, help='Maximum messages per conversation (default THREADLINE_MESSAGE_LIMIT)')
    parser.add_argument('--stats', action='store_true', help='Show identity graph statistics')
    args = parser.parse_args()

    try:
        start = parse_datetime(args.after)
        end = parse_datetime(args.before, end_of_day=True)
    except ValueError:
        parser.error("invalid date in --after/--before: use YYYY-MM-DD or ISO 8601")

    load_dotenv()
    from config.settings import settings
    engine = create_engine(settings)

    if args.stats:
        stats = engine.stats()
        print(f"\nIdentities: {stats['identities']['total_identities']}")
        print(f"  with phone: {stats['identities']['phone_identities']}")
        print(f"  with email: {stats['identities']['email_identities']}")
        print(f"  by source: {stats['identities']['by_source']}")
        for source, error in stats['load']['errors'].items():
            print(f"  {source} unavailable: {error}")
        return

    if args.resolve:
        print_resolution(engine, args.resolve)
        return

    if args.conversations_with:
        print_conversations(engine, args.conversations_with, args, start, end)
        return

    if args.count:
        result = engine.count(
            CountEntity(args.count),
            contact_id=args.contact,
            start=start,
            end=end,
        )
        print(f"\n{result.details}")
        return

    parser.print_help()
    print("\nExamples:")
    print("  python scripts/threadline_query.py --resolve 'Alex'")
    print("  python scripts/threadline_query.py --conversations-with phone:+15551234567 --after 2024-01-01")
    print("  python scripts/threadline_query.py --count messages_total")


if __name__ == '__main__':
    main()
