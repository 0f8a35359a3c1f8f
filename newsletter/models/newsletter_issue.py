"""
NewsletterIssue Model
"""

from sqlalchemy import Column, Integer, String, DateTime, Text
from newsletter.database import Base


class NewsletterIssue(Base):
    """A published newsletter issue. Immutable once created."""
    __tablename__ = "newsletter_issues"

    id = Column(Integer, primary_key=True, autoincrement=True)

    title = Column(Text, nullable=False)
    text_body = Column(Text, nullable=False)
    html_body = Column(Text, nullable=False)

    created_by = Column(String(255), nullable=False)
    # Actor id of the operator who published the issue

    published_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<NewsletterIssue(id={self.id}, title='{self.title[:30]}')>"
