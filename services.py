import logging
from dataclasses import dataclass
from typing import Optional

from config import Settings
from db.db import init_schema
from distribution_engine import DistributionEngine
from ledger import DistributionLedger, InMemoryLedger
from ledger_db import PostgresLedger
from notifications import LogNotifier, Notifier
from placement_engine import PlacementEngine
from reporting import ReportingFacade
from tree_store import InMemoryTreeStore, TreeStore
from tree_store_db import PostgresTreeStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    tree: TreeStore
    ledger: DistributionLedger
    placement: PlacementEngine
    distribution: DistributionEngine
    reporting: ReportingFacade


def build_services(
    settings: Settings,
    tree: Optional[TreeStore] = None,
    ledger: Optional[DistributionLedger] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    """
    wire stores and engines from settings. stores can be injected (tests);
    otherwise the configured backend is used. the root is bootstrapped here.
    """
    if tree is None or ledger is None:
        if settings.store_backend == "postgres":
            init_schema(settings.database_url)
            tree = tree or PostgresTreeStore(settings.database_url, max_children=settings.max_children)
            ledger = ledger or PostgresLedger(settings.database_url)
        else:
            tree = tree or InMemoryTreeStore(max_children=settings.max_children)
            ledger = ledger or InMemoryLedger()

    tree.ensure_root(settings.root_member_id)

    placement = PlacementEngine(
        tree,
        overflow_policy=settings.overflow_policy,
        max_depth=settings.max_tree_depth,
        retry_attempts=settings.retry_attempts,
    )
    distribution = DistributionEngine(
        tree,
        ledger,
        unit_amount=settings.psf_unit_amount,
        total_amount=settings.psf_amount,
        max_levels=settings.max_distribution_levels,
        retry_attempts=settings.retry_attempts,
        notifier=notifier if notifier is not None else LogNotifier(),
    )
    logger.info("Services ready (backend=%s)", settings.store_backend)
    return Services(
        tree=tree,
        ledger=ledger,
        placement=placement,
        distribution=distribution,
        reporting=ReportingFacade(tree, ledger),
    )
