"""
Analytics tests.

Guards against aggregates disagreeing with the daily buckets they are
derived from.
"""
from crmpulse.models.records import ContactRecord, DealRecord, PipelineDefinition, StageDefinition
from crmpulse.services.aggregator import aggregate_contacts, aggregate_deals
from crmpulse.services.analytics import derive_contact_aggregates, derive_deal_aggregates

PIPELINES = (
    PipelineDefinition("default", "Pregrado", (
        StageDefinition("s1", "Nuevo", False, 0.1),
        StageDefinition("s2", "Matriculado", True, 1.0),
        StageDefinition("s3", "Perdido", True, 0.5),
    )),
    PipelineDefinition("p2", "Posgrado", (
        StageDefinition("t1", "Prospecto", False, 0.2),
        StageDefinition("t2", "Cerrado", True, 0.0),
    )),
)


def _contacts():
    return aggregate_contacts([
        ContactRecord("1", "2026-01-30", "lead", "PAID_SOCIAL", 3),
        ContactRecord("2", "2026-01-31", "lead", "ORGANIC_SEARCH", 0),
        ContactRecord("3", "2026-02-01", "customer", "PAID_SOCIAL", 1),
    ]).daily


def _deals():
    return aggregate_deals(
        [
            DealRecord("d1", "2026-01-30", "default", "s2", 1200.0),
            DealRecord("d2", "2026-01-31", "default", "s2", 800.0),
            DealRecord("d3", "2026-02-01", "default", "s3", 0.0),
            DealRecord("d4", "2026-02-01", "p2", "t2", 0.0),
            DealRecord("d5", "2026-02-02", "p2", "t1", 300.0),
        ],
        PIPELINES,
        {"d1": "PAID_SOCIAL", "d2": "PAID_SOCIAL"},
    ).daily


def test_contact_aggregates():
    result = derive_contact_aggregates(_contacts())

    assert result["total"] == 3
    assert result["lifecycle_distribution"] == {"customer": 1, "lead": 2}
    assert result["source_distribution"] == {"ORGANIC_SEARCH": 1, "PAID_SOCIAL": 2}
    assert result["conversion_rate"] == 66.7
    assert result["avg_conversions_per_contact"] == 1.33
    assert result["monthly_creation"] == {"2026-01": 2, "2026-02": 1}


def test_deal_aggregates():
    result = derive_deal_aggregates(_deals(), PIPELINES)

    assert result["total"] == 5
    assert result["pipeline_distribution"] == {"Posgrado": 2, "Pregrado": 3}
    assert result["stage_distribution"] == {
        "Posgrado": {"Cerrado": 1, "Prospecto": 1},
        "Pregrado": {"Matriculado": 2, "Perdido": 1},
    }
    assert result["won_lost_by_pipeline"] == {
        "Posgrado": {"won": 0, "lost": 1, "total": 2},
        "Pregrado": {"won": 2, "lost": 1, "total": 3},
    }
    assert result["won_deals"] == 2
    assert result["lost_deals"] == 2
    assert result["win_rate"] == 50.0
    assert result["revenue"] == {
        "total": 2300.0,
        "by_pipeline": {"Posgrado": 300.0, "Pregrado": 2000.0},
        "avg_deal_value": 460.0,
    }
    assert result["source_by_pipeline"]["Pregrado"] == {"PAID_SOCIAL": 2, "unknown": 1}
    assert result["monthly_deals"] == {"2026-01": 2, "2026-02": 3}


def test_totals_equal_sum_of_daily_buckets():
    contacts = derive_contact_aggregates(_contacts())
    deals = derive_deal_aggregates(_deals(), PIPELINES)

    assert contacts["total"] == sum(_contacts()["daily_creation"].values())
    assert contacts["total"] == sum(contacts["source_distribution"].values())
    assert contacts["total"] == sum(contacts["lifecycle_distribution"].values())
    assert deals["total"] == sum(_deals()["daily_deals"].values())
    assert deals["total"] == sum(deals["pipeline_distribution"].values())
    assert deals["total"] == sum(
        n for stages in deals["stage_distribution"].values() for n in stages.values()
    )


def test_empty_buckets_give_zero_rates():
    contacts = derive_contact_aggregates({})
    deals = derive_deal_aggregates({}, ())

    assert contacts["total"] == 0
    assert contacts["conversion_rate"] == 0.0
    assert deals["win_rate"] == 0.0
    assert deals["revenue"]["avg_deal_value"] == 0.0


def test_deals_in_retired_pipeline_keep_labels_and_outcome():
    pipelines = (
        PipelineDefinition("p1", "Pregrado", (StageDefinition("a", "Nuevo", False, 0.1),)),
        PipelineDefinition("p9", "Maestria NO USAR", (StageDefinition("z", "Cerrado", True, 1.0),)),
    )
    daily = aggregate_deals([DealRecord("d1", "2026-02-01", "p9", "z", 0.0)], pipelines, {}).daily

    result = derive_deal_aggregates(daily, pipelines)

    assert result["pipeline_distribution"] == {"Maestria NO USAR": 1}
    assert result["stage_distribution"] == {"Maestria NO USAR": {"Cerrado": 1}}
    assert result["won_deals"] == 1
    assert result["win_rate"] == 100.0


def test_stage_borrowed_from_another_pipeline_uses_its_definition():
    # "Inscrito" carries no name marker, so only the definition makes it won
    pipelines = (
        PipelineDefinition("p1", "Pregrado", (StageDefinition("won1", "Inscrito", True, 1.0),)),
        PipelineDefinition("p2", "Posgrado", (StageDefinition("t1", "Prospecto", False, 0.2),)),
    )
    daily = aggregate_deals([DealRecord("d1", "2026-02-01", "p2", "won1", 0.0)], pipelines, {}).daily

    result = derive_deal_aggregates(daily, pipelines)

    assert result["stage_distribution"] == {"Posgrado": {"Inscrito": 1}}
    assert result["won_lost_by_pipeline"]["Posgrado"] == {"won": 1, "lost": 0, "total": 1}
