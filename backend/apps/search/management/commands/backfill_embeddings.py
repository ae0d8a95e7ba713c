"""
Django management command to backfill result embeddings for one or more queries.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.search.apps import get_search_service
from apps.search.exceptions import SearchError
from apps.search.services.deadline import Deadline
from apps.search.tasks import backfill_result_embeddings


class Command(BaseCommand):
    help = 'Fetch candidates for the given queries and store embeddings for those missing one'

    def add_arguments(self, parser):
        parser.add_argument(
            '--query',
            action='append',
            dest='queries',
            required=True,
            help='Query to fetch candidates for (repeatable)',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be done without actually doing it',
        )
        parser.add_argument(
            '--async',
            action='store_true',
            dest='run_async',
            help='Dispatch a Celery task per query instead of running inline',
        )
        parser.add_argument(
            '--timeout',
            type=float,
            default=120.0,
            help='Deadline per query in seconds (default: 120)',
        )

    def handle(self, *args, **options):
        service = get_search_service()
        if service.embedding_service is None and not options['dry_run']:
            raise CommandError(
                "Embedding service is not configured. "
                "Set EMBEDDING_ENDPOINT_URL and EMBEDDING_API_TOKEN."
            )

        service.store.warm_up()
        total_missing = 0
        total_stored = 0

        for query in options['queries']:
            deadline = Deadline(options['timeout'])
            try:
                candidates = service.provider.search(query, deadline=deadline)
                missing = service.missing_embeddings(candidates, deadline=deadline)
            except SearchError as exc:
                self.stdout.write(self.style.ERROR(f"Query '{query}': {exc}"))
                continue

            total_missing += len(missing)
            self.stdout.write(
                f"Query: {query}\n"
                f"  Candidates: {len(candidates)}\n"
                f"  Without embeddings: {len(missing)}"
            )

            if not missing or options['dry_run']:
                continue

            if options['run_async']:
                try:
                    result = backfill_result_embeddings.delay([c.to_dict() for c in missing])
                    self.stdout.write(
                        self.style.SUCCESS(f"  Scheduled backfill (task: {result.id})")
                    )
                except Exception as e:
                    self.stdout.write(self.style.ERROR(f"  Failed to schedule backfill: {e}"))
                continue

            try:
                stored = service.backfill(missing, deadline=deadline)
            except SearchError as exc:
                self.stdout.write(self.style.ERROR(f"  Backfill failed: {exc}"))
                continue
            total_stored += stored
            self.stdout.write(self.style.SUCCESS(f"  Stored {stored} embeddings"))

        # Summary
        self.stdout.write("\n" + "=" * 50)
        if options['dry_run']:
            self.stdout.write(
                self.style.WARNING(f"[DRY RUN] Would embed {total_missing} candidates")
            )
        elif options['run_async']:
            self.stdout.write(
                self.style.SUCCESS(f"Scheduled backfill for {total_missing} candidates")
            )
        else:
            self.stdout.write(
                self.style.SUCCESS(f"Stored {total_stored} of {total_missing} missing embeddings")
            )
