"""Deal board module -- models, schemas, repository and mutation service.

Provides SQLAlchemy models (User, Pipeline, PipelineStage, Deal,
LeadActivity, QuoteItem, Notification), Pydantic schemas for the HTTP
boundary, DealRepository for async CRUD, and DealService which applies the
board rules and hands every committed mutation to the ChangeNotifier.
"""
