import logging
from datetime import timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import registry, relationship
from sqlalchemy.types import TypeDecorator

from lims.adapters import codecs
from lims.domain import catalog, interpretation, order, patient, result, specimen

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata


class TZDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name != "postgresql":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class ValueObjects(TypeDecorator):
    """Frozen dataclasses (or tuples of them) stored as JSON via pydantic."""

    impl = JSON(none_as_null=True)
    cache_ok = True

    def __init__(self, type_, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.type_ = type_

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return codecs.dump(self.type_, value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return codecs.adapter_for(self.type_).validate_python(value)


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


patients = Table(
    "patients",
    metadata,
    Column("patient_id", String(64), primary_key=True),
    Column("family_name", String(255)),
    Column("given_name", String(255)),
    Column("birthdate", String(10)),
    Column("gender", String(32)),
)

orders = Table(
    "orders",
    metadata,
    Column("order_number", String(32), primary_key=True),
    Column("patient_id", String(64), ForeignKey("patients.patient_id"), nullable=False, index=True),
    Column("physician", ValueObjects(order.PhysicianSnapshot)),
    Column("medical_office_id", String(64)),
    Column("priority", _enum(order.Priority), nullable=False),
    Column("clinical_info", Text),
    Column("specimen_type", _enum(order.SpecimenType)),
    Column("specimen_barcode", String(64)),
    Column("specimen_condition", _enum(order.SpecimenCondition)),
    Column("scheduled_date", TZDateTime),
    Column("collection_date", TZDateTime),
    Column("received_at", TZDateTime),
    Column("received_by", String(64)),
    Column("accession_number", String(32), unique=True),
    Column("accession_date", TZDateTime),
    Column("accessioned_by", String(64)),
    Column("accession_notes", Text),
    Column("rejection", ValueObjects(Optional[order.RejectionRecord])),
    Column("hold", ValueObjects(Optional[order.HoldRecord])),
    Column("cancelled_by", String(64)),
    Column("cancelled_at", TZDateTime),
    Column("cancellation_reason", Text),
    Column("status", _enum(order.OrderStatus), nullable=False, index=True),
    Column("payment_status", _enum(order.PaymentStatus), nullable=False),
    Column("total_amount", Numeric(10, 2), nullable=False),
    Column("expected_completion", TZDateTime),
    Column("actual_completion", TZDateTime),
    Column("created_by", String(64)),
    Column("created_at", TZDateTime),
    Column("updated_at", TZDateTime),
    Column("version_number", Integer, nullable=False),
)

order_line_items = Table(
    "order_line_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_number", String(32), ForeignKey("orders.order_number"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("test_id", String(64), nullable=False),
    Column("catalog_kind", _enum(catalog.CatalogKind), nullable=False),
    Column("test_name", String(255), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("status", _enum(order.LineItemStatus), nullable=False),
    Column("priority", _enum(order.Priority), nullable=False),
    Column("turnaround_hours", Integer, nullable=False),
    Column("collected_at", TZDateTime),
    Column("collected_by", String(64)),
    Column("processing_started_at", TZDateTime),
    Column("processing_completed_at", TZDateTime),
    Column("notes", Text),
    UniqueConstraint("order_number", "test_id", name="uq_line_item_test"),
)

specimen_accessions = Table(
    "specimen_accessions",
    metadata,
    Column("order_number", String(32), ForeignKey("orders.order_number"), primary_key=True),
    Column("specimen_type", _enum(order.SpecimenType)),
    Column("barcode", String(64)),
    Column("state", _enum(specimen.SpecimenState), nullable=False),
    Column("accession_number", String(32), unique=True),
    Column("accessioned_by", String(64)),
    Column("accessioned_at", TZDateTime),
    Column("received_by", String(64)),
    Column("received_at", TZDateTime),
    Column("condition", _enum(order.SpecimenCondition)),
    Column("rejection_reason", _enum(order.RejectionReason)),
    Column("rejection_comments", Text),
    Column("hold_reason", Text),
    Column("storage_location", String(255)),
    Column("storage_temperature", _enum(specimen.StorageTemperature)),
    Column("chain_of_custody", ValueObjects(codecs.CHAIN_OF_CUSTODY), nullable=False),
    Column("aliquots", ValueObjects(codecs.ALIQUOTS), nullable=False),
    Column("updated_at", TZDateTime),
    Column("version_number", Integer, nullable=False),
)

results = Table(
    "results",
    metadata,
    Column("result_number", String(32), primary_key=True),
    Column("order_number", String(32), ForeignKey("orders.order_number"), nullable=False, index=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("test_id", String(64), nullable=False),
    Column("test_name", String(255)),
    Column("kind", _enum(catalog.CatalogKind), nullable=False),
    Column("status", _enum(result.ResultStatus), nullable=False, index=True),
    Column("parameters", ValueObjects(codecs.PARAMETERS), nullable=False),
    Column("target_results", ValueObjects(codecs.TARGET_RESULTS), nullable=False),
    Column("resistance_results", ValueObjects(codecs.RESISTANCE_RESULTS), nullable=False),
    Column("susceptibility_results", ValueObjects(codecs.SUSCEPTIBILITY_RESULTS), nullable=False),
    Column("quality_control", ValueObjects(Optional[result.QualityControl])),
    Column("treatment_suggestions", ValueObjects(Optional[result.TreatmentSuggestions])),
    Column("interpretation", Text),
    Column("recommendations", Text),
    Column("comments", Text),
    Column("overall_override", _enum(interpretation.ConventionalOverall)),
    Column("conventional_overall", _enum(interpretation.ConventionalOverall)),
    Column("molecular_overall", _enum(interpretation.MolecularOverall)),
    Column("pathogens_detected", ValueObjects(codecs.NAMES), nullable=False),
    Column("resistance_detected", ValueObjects(codecs.NAMES), nullable=False),
    Column("critical_values", ValueObjects(codecs.CRITICAL_VALUES), nullable=False),
    Column("amendments", ValueObjects(codecs.AMENDMENTS), nullable=False),
    Column("performed_by", String(64), nullable=False),
    Column("performed_at", TZDateTime),
    Column("reviewed_by", String(64)),
    Column("reviewed_at", TZDateTime),
    Column("review_notes", Text),
    Column("approved_by", String(64)),
    Column("approved_at", TZDateTime),
    Column("finalized_by", String(64)),
    Column("reported_at", TZDateTime),
    Column("cancelled_by", String(64)),
    Column("cancelled_at", TZDateTime),
    Column("cancellation_reason", Text),
    Column("created_at", TZDateTime),
    Column("updated_at", TZDateTime),
    Column("version_number", Integer, nullable=False),
)

# one live result per line item; cancelled results may be superseded
Index(
    "uq_results_active_line_item",
    results.c.order_number,
    results.c.test_id,
    unique=True,
    sqlite_where=results.c.status != result.ResultStatus.CANCELLED,
    postgresql_where=results.c.status != result.ResultStatus.CANCELLED,
)

sequence_counters = Table(
    "sequence_counters",
    metadata,
    Column("kind", String(16), primary_key=True),
    Column("day", Date, primary_key=True),
    Column("value", Integer, nullable=False),
)

# Catalog tables - owned by the catalog services, read through adapters.catalog
tests = Table(
    "tests",
    metadata,
    Column("test_id", String(64), primary_key=True),
    Column("code", String(64), nullable=False),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("turnaround_hours", Integer, nullable=False, default=24),
    Column("active", Boolean, nullable=False, default=True),
)

pcr_tests = Table(
    "pcr_tests",
    metadata,
    Column("test_id", String(64), primary_key=True),
    Column("code", String(64), nullable=False),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("turnaround_hours", Integer, nullable=False, default=24),
    Column("targets", JSON, nullable=False),
    Column("resistance_markers", JSON, nullable=False),
    Column("active", Boolean, nullable=False, default=True),
)


def start_mappers():
    if inspect(order.Order, raiseerr=False) is not None:
        logger.debug("Mappers already started")
        return
    logger.info("Starting mappers")
    mapper_registry.map_imperatively(patient.Patient, patients)
    line_item_mapper = mapper_registry.map_imperatively(order.TestLineItem, order_line_items)
    mapper_registry.map_imperatively(
        order.Order,
        orders,
        properties={
            "line_items": relationship(
                line_item_mapper,
                order_by=order_line_items.c.position,
                collection_class=ordering_list("position"),
                cascade="all, delete-orphan",
                lazy="selectin",
            ),
        },
        version_id_col=orders.c.version_number,
    )
    mapper_registry.map_imperatively(
        specimen.SpecimenAccession,
        specimen_accessions,
        version_id_col=specimen_accessions.c.version_number,
    )
    mapper_registry.map_imperatively(
        result.Result,
        results,
        version_id_col=results.c.version_number,
    )


@event.listens_for(order.Order, "load")
def receive_order_load(loaded, _):
    loaded.events = []


@event.listens_for(specimen.SpecimenAccession, "load")
def receive_specimen_load(loaded, _):
    loaded.events = []


@event.listens_for(result.Result, "load")
def receive_result_load(loaded, _):
    loaded.events = []
