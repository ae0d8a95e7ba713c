"""
Django management command to run a reranked search from the command line.
Usage: python manage.py search_papers "your query here"
"""

import json

from django.core.management.base import BaseCommand, CommandError

from apps.search.apps import get_search_service
from apps.search.exceptions import OperationCancelled, UpstreamError
from apps.search.services.deadline import Deadline


class Command(BaseCommand):
    help = 'Search the provider and print results reranked by semantic similarity'

    def add_arguments(self, parser):
        parser.add_argument(
            'query',
            type=str,
            help='Search query'
        )
        parser.add_argument(
            '--timeout',
            type=float,
            default=None,
            help='Request deadline in seconds (default: SEARCH_TIMEOUT)'
        )
        parser.add_argument(
            '--limit',
            type=int,
            default=20,
            help='Number of results to print (default: 20)'
        )
        parser.add_argument(
            '--json',
            action='store_true',
            help='Output results in JSON format'
        )

    def handle(self, *args, **options):
        query = options['query']
        service = get_search_service()
        deadline = Deadline(options['timeout'] if options['timeout'] is not None else service.timeout)

        try:
            results = service.search(query, deadline=deadline)
        except ValueError as exc:
            raise CommandError(str(exc))
        except (UpstreamError, OperationCancelled) as exc:
            raise CommandError(f"Search failed: {exc}")

        shown = results[:options['limit']]

        if options['json']:
            self.stdout.write(json.dumps([r.to_dict() for r in shown], indent=2))
            return

        self.stdout.write(f"Query: {query}")
        self.stdout.write(f"Results: {len(results)} (showing {len(shown)})")
        self.stdout.write(f"Vector store: {service.store.status()}")
        self.stdout.write("")
        for position, result in enumerate(shown, start=1):
            self.stdout.write(f"{position:>3}. [{result.id}] {result.title}")
            if result.published_at:
                self.stdout.write(f"     published {result.published_at}")

        if not results:
            self.stdout.write(self.style.WARNING("No results"))
        else:
            self.stdout.write(self.style.SUCCESS(f"\nReturned {len(results)} results"))
