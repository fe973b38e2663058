from dataclasses import dataclass

from .ledger import CreditLedger
from .orchestrator import SagaOrchestrator
from .poller import StatusPoller
from .retry import RetryService
from .router import GenerationRouter
from .store import GenerationStore


@dataclass
class Services:
    """Everything the HTTP layer needs, wired once at startup."""

    store: GenerationStore
    ledger: CreditLedger
    providers: object
    orchestrator: SagaOrchestrator
    router: GenerationRouter
    poller: StatusPoller
    retry: RetryService

    @classmethod
    def wire(cls, store: GenerationStore, ledger: CreditLedger, providers, stitcher) -> "Services":
        orchestrator = SagaOrchestrator(store, providers, ledger, stitcher)
        return cls(
            store=store,
            ledger=ledger,
            providers=providers,
            orchestrator=orchestrator,
            router=GenerationRouter(store, providers, ledger),
            poller=StatusPoller(orchestrator),
            retry=RetryService(orchestrator),
        )
