from django.apps import AppConfig, apps


class SearchConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.search"
    verbose_name = "Semantic Search"

    search_service = None

    def ready(self):
        from apps.search.services.factory import build_search_service

        self.search_service = build_search_service()


def get_search_service():
    """The process-wide ``RerankingSearchService`` built at startup."""
    return apps.get_app_config("search").search_service
