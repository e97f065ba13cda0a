"""Wiring of repositories, the order engine and its background machinery."""
from dataclasses import dataclass
from typing import Optional

from pymongo.database import Database

from config import Settings
from database import Storage
from inventory import InventoryLedger
from listings import ListingService
from orders import OrderAssembler
from payments import PaymentService
from repositories import Repositories
from scheduler import Clock, Scheduler
from snapshots import PriceSnapshotRecorder
from worker import BackgroundWorker


@dataclass
class Services:
    settings: Settings
    storage: Storage
    repos: Repositories
    clock: Clock
    worker: BackgroundWorker
    scheduler: Scheduler
    inventory: InventoryLedger
    snapshots: PriceSnapshotRecorder
    orders: OrderAssembler
    payments: PaymentService
    listings: ListingService

    def start(self) -> None:
        self.worker.start()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.worker.stop()


def build_services(db: Database, settings: Settings, clock: Optional[Clock] = None) -> Services:
    clock = clock or Clock()
    storage = Storage(db, transactional=settings.mongo_transactions)
    repos = Repositories.from_db(db)
    worker = BackgroundWorker()
    inventory = InventoryLedger(repos.products, repos.line_items, reserve_on_order=settings.reserve_stock_on_order)
    snapshots = PriceSnapshotRecorder(repos.snapshots, clock)
    services = Services(
        settings=settings,
        storage=storage,
        repos=repos,
        clock=clock,
        worker=worker,
        scheduler=Scheduler(clock),
        inventory=inventory,
        snapshots=snapshots,
        orders=OrderAssembler(storage, repos, inventory, snapshots, clock, worker, settings),
        payments=PaymentService(storage, repos, inventory, clock, worker, settings),
        listings=ListingService(storage, repos, clock, worker),
    )
    schedule_jobs(services)
    return services


def schedule_jobs(services: Services) -> None:
    settings = services.settings
    scheduler = services.scheduler
    scheduler.every(settings.sweep_interval_seconds, "expire_stale_intents", services.payments.expire_stale)
    scheduler.every(settings.sweep_interval_seconds, "cancel_abandoned_orders", services.orders.cancel_abandoned)
    scheduler.every(settings.category_refresh_interval_seconds, "refresh_category_flags",
                    services.listings.refresh_all_category_flags)
