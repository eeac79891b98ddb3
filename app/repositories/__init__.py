from app.repositories.analysis_artifacts import InMemoryAnalysisArtifactsRepository
from app.repositories.jobs import InMemoryJobsRepository
from app.repositories.notifications import InMemoryNotificationsRepository
from app.repositories.price_lists import InMemoryPriceListsRepository
from app.repositories.prompt_templates import InMemoryPromptTemplatesRepository
from app.repositories.users import InMemoryUsersRepository

__all__ = [
    "InMemoryAnalysisArtifactsRepository",
    "InMemoryJobsRepository",
    "InMemoryNotificationsRepository",
    "InMemoryPriceListsRepository",
    "InMemoryPromptTemplatesRepository",
    "InMemoryUsersRepository",
]
