from taskengine.processors.accounts import (
    AccountItem,
    AccountProvisioner,
    BulkAccountCreationProcessor,
    HttpAccountProvisioner,
    InMemoryAccountDirectory,
)
from taskengine.processors.base import (
    ItemContext,
    ItemFailure,
    ItemProcessor,
    ProcessorRegistry,
)
from taskengine.processors.imports import (
    BulkImportProcessor,
    InMemoryRecordSink,
    RecordSink,
    SqlRecordSink,
)
from taskengine.service.settings import Settings


def default_registry(settings: Settings | None = None) -> ProcessorRegistry:
    settings = settings or Settings()

    provisioner: AccountProvisioner
    if settings.account_service_url:
        provisioner = HttpAccountProvisioner(
            settings.account_service_url, token=settings.account_service_token
        )
    else:
        provisioner = InMemoryAccountDirectory()

    sink: RecordSink
    if settings.import_sink == "memory":
        sink = InMemoryRecordSink()
    else:
        sink = SqlRecordSink(settings.db_url)

    registry = ProcessorRegistry()
    registry.register(BulkImportProcessor(sink))
    registry.register(BulkAccountCreationProcessor(provisioner))
    return registry


__all__ = [
    "AccountItem",
    "AccountProvisioner",
    "BulkAccountCreationProcessor",
    "BulkImportProcessor",
    "HttpAccountProvisioner",
    "InMemoryAccountDirectory",
    "InMemoryRecordSink",
    "ItemContext",
    "ItemFailure",
    "ItemProcessor",
    "ProcessorRegistry",
    "RecordSink",
    "SqlRecordSink",
    "default_registry",
]
