"""
Readmission Risk Service
========================

Tenant-scoped hospital patient records with a rule-based readmission
risk scorer and AI-phrased care recommendations.

This service combines:
1. A deterministic rule engine for 30-day readmission risk (0-100)
2. Patient record CRUD, isolated per hospital
3. Gemini-generated care recommendations with a static fallback

Components:
-----------
- config: Environment configuration and scoring thresholds
- model: ScoringRule table, RiskScorer, RiskAssessment
- schemas: Pydantic request/response models (camelCase on the wire)
- store: PatientStore (SQLAlchemy), tenant-scoped persistence
- recommendations: GeminiRecommender and fallback recommendations
- api: FastAPI REST endpoints

Endpoints:
----------
- POST /api/predictions: Score a patient and optionally persist the result
- GET/POST /api/patients, GET/PUT/DELETE /api/patients/{id}: Patient records
- POST /api/recommendations: Care recommendations for a risk tier
- GET /health: Service health check
- GET /rules: List the scoring rules

Usage Example:
--------------
```python
from readmission_risk.model import RiskScorer

scorer = RiskScorer()
assessment = scorer.score({
    "age": 72,
    "medicalHistory": {"conditions": ["Type 2 Diabetes"]},
})
print(f"Risk: {assessment.readmission_risk} ({assessment.risk_level.value})")
for factor in assessment.factors:
    print(f"  - {factor}")
```

Port: 8010

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Team"
