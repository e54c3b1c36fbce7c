from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from dmarc_store.database import Base
from dmarc_store.models.dmarc import utc_now


class ReportLogEntry(Base):
    """Outcome of one attempt to load a report file"""
    __tablename__ = "reportlog"

    id = Column(Integer, primary_key=True)

    # Report identity, when the file got far enough to be parsed
    domain = Column(String(255), nullable=True)
    external_id = Column(String(255), nullable=True)

    event_time = Column(DateTime, default=utc_now, nullable=False, index=True)
    filename = Column(String(255), nullable=True)
    source = Column(String(32), nullable=False)
    success = Column(Boolean, nullable=False, default=False)
    message = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ReportLogEntry(id={self.id}, filename={self.filename}, success={self.success})>"
