"""Initialize database with retention settings and a sample experiment."""
import sys
from sqlalchemy.orm import Session
from splitlab.database import SessionLocal, engine, Base
from splitlab.config import get_settings
from splitlab.models import Experiment, ExperimentStatus, GlobalSetting
from splitlab.services.retention import EVENTS_RETENTION_KEY, METRICS_RETENTION_KEY
from splitlab.timeutils import utcnow


def init_database():
    """Create tables, seed retention settings and a global sample experiment."""
    settings = get_settings()

    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    db: Session = SessionLocal()

    try:
        # Check if the sample experiment already exists
        existing = db.query(Experiment).filter(Experiment.code == "checkout-cta").first()
        if existing:
            print("✓ Database already initialized")
            return

        print("\nSeeding retention settings...")
        for key, value, description in (
            (EVENTS_RETENTION_KEY, settings.events_retention_days, "Days to keep raw experiment events"),
            (METRICS_RETENTION_KEY, settings.metrics_retention_days, "Days to keep aggregated metric buckets"),
        ):
            if db.get(GlobalSetting, key) is None:
                db.add(GlobalSetting(key=key, value=str(value), description=description))
                print(f"✓ {key} = {value}")
        db.commit()

        # Create sample experiment
        print("\nCreating sample experiment...")
        experiment = Experiment(
            code="checkout-cta",
            name="Checkout call to action",
            description="Compare two checkout button labels by purchase rate",
            status=ExperimentStatus.RUNNING,
            started_at=utcnow(),
            assignment={"unit": "subjectId", "sticky": True},
            variants=[
                {"key": "a", "weight": 50, "configSlug": "checkout-cta-a"},
                {"key": "b", "weight": 50, "configSlug": "checkout-cta-b"}
            ],
            primary_metric={
                "key": "purchase_rate",
                "kind": "rate",
                "numeratorEventKey": "purchase",
                "denominatorEventKey": "view",
                "objective": "maximize"
            },
            winner_policy={
                "mode": "automatic",
                "pickAfterMs": 0,
                "minExposures": 10,
                "minConversions": 1
            }
        )
        db.add(experiment)
        db.commit()
        print(f"✓ Created experiment: {experiment.code} ({experiment.id})")

        print("\n" + "="*50)
        print("✓ Database initialized successfully!")
        print("="*50)
        print("\nTry it with curl:")
        print('  curl "http://localhost:8000/experiments/checkout-cta/assignment?subjectId=user_123"')
        print("\n" + "="*50)

    except Exception as e:
        print(f"✗ Error initializing database: {e}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    init_database()
