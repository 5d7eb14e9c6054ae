from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base
from models.statuses import CalibrationStatus, ItemStatus, MaintenanceStatus, RentalStatus, RequestStatus


class Status(Base):
    __tablename__ = "Statuses"
    __table_args__ = (UniqueConstraint("Type", "Name", name="UQ_Statuses_Type_Name"),)

    StatusID = Column(Integer, primary_key=True)
    Type = Column(String(20), nullable=False)
    Name = Column(String(40), nullable=False)


class Category(Base):
    __tablename__ = "Categories"

    CategoryID = Column(Integer, primary_key=True)
    CategoryName = Column(String(100), nullable=False, unique=True)
    Description = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())

    Items = relationship("Item", back_populates="Category")


class Item(Base):
    __tablename__ = "Items"

    ItemID = Column(Integer, primary_key=True)
    ItemName = Column(String(255), nullable=False)
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID"))
    Specification = Column(String(2000))
    SerialNumber = Column(String(100), unique=True)
    Status = Column(String(40), nullable=False, default=ItemStatus.AVAILABLE.value)
    DefaultRentalDays = Column(Integer)
    RequiresCalibration = Column(Boolean, default=False)
    CalibrationInterval = Column(Integer)
    LastCalibration = Column(Date)
    NextCalibration = Column(Date)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Category = relationship("Category", back_populates="Items")
    Requests = relationship("ItemRequest", back_populates="Item")
    History = relationship("ItemHistory", back_populates="Item", order_by="ItemHistory.HistoryID")
    Documents = relationship("Document", back_populates="Item")
    Maintenances = relationship("Maintenance", back_populates="Item", order_by="Maintenance.MaintenanceID")


class ItemRequest(Base):
    __tablename__ = "Requests"

    RequestID = Column(Integer, primary_key=True)
    UserID = Column(String(64), nullable=False)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False, index=True)
    RequestType = Column(String(20), nullable=False)
    Reason = Column(String(1000))
    ApprovedBy = Column(String(64))
    RequestDate = Column(DateTime, nullable=False)
    RequestedStartDate = Column(DateTime)
    RequestedEndDate = Column(DateTime)
    DecisionDate = Column(DateTime)
    DecisionReason = Column(String(1000))
    Status = Column(String(20), nullable=False, default=RequestStatus.PENDING.value, index=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Requests")
    Rental = relationship("Rental", back_populates="Request", uselist=False)
    Calibration = relationship("Calibration", back_populates="Request", uselist=False)


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("Requests.RequestID"), nullable=False, unique=True)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    ActualReturnDate = Column(DateTime)
    FineAmount = Column(Numeric(10, 2))
    ReturnCondition = Column(String(500))
    Status = Column(String(20), nullable=False, default=RentalStatus.ACTIVE.value, index=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Request = relationship("ItemRequest", back_populates="Rental")


class Calibration(Base):
    __tablename__ = "Calibrations"

    CalibrationID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("Requests.RequestID"), nullable=False, unique=True)
    CalibrationDate = Column(DateTime, nullable=False)
    Result = Column(String(20))
    CertificateUrl = Column(String(500))
    CertificateNumber = Column(String(100), unique=True)
    ValidUntil = Column(Date)
    Notes = Column(String(1000))
    Status = Column(String(20), nullable=False, default=CalibrationStatus.SCHEDULED.value)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Request = relationship("ItemRequest", back_populates="Calibration")


class Maintenance(Base):
    __tablename__ = "Maintenances"

    MaintenanceID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    UserID = Column(String(64), nullable=False)
    Reason = Column(String(1000))
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime)
    Findings = Column(String(2000))
    ActionTaken = Column(String(2000))
    CompletedBy = Column(String(64))
    Status = Column(String(20), nullable=False, default=MaintenanceStatus.IN_PROGRESS.value)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Maintenances")


class ItemHistory(Base):
    __tablename__ = "ItemHistory"

    HistoryID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False, index=True)
    ActivityType = Column(String(50), nullable=False)
    RelatedRequestID = Column(Integer, ForeignKey("Requests.RequestID"))
    Description = Column(String(2000))
    PerformedBy = Column(String(64), nullable=False)
    ActivityDate = Column(DateTime, nullable=False)

    Item = relationship("Item", back_populates="History")


class ActivityLog(Base):
    __tablename__ = "ActivityLogs"

    ActivityID = Column(Integer, primary_key=True)
    UserID = Column(String(64), nullable=False)
    ActivityType = Column(String(50), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    ItemID = Column(Integer)
    RequestID = Column(Integer)
    RentalID = Column(Integer)
    CalibrationID = Column(Integer)
    MaintenanceID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class Notification(Base):
    __tablename__ = "Notifications"

    NotificationID = Column(Integer, primary_key=True)
    UserID = Column(String(64), nullable=False)
    RequestID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Message = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)


class DocumentType(Base):
    __tablename__ = "DocumentTypes"

    DocumentTypeID = Column(Integer, primary_key=True)
    Name = Column(String(100), nullable=False, unique=True)
    Description = Column(String(500))

    Documents = relationship("Document", back_populates="DocumentType")


class Document(Base):
    __tablename__ = "Documents"

    DocumentID = Column(Integer, primary_key=True)
    DocumentTypeID = Column(Integer, ForeignKey("DocumentTypes.DocumentTypeID"))
    ItemID = Column(Integer, ForeignKey("Items.ItemID"))
    FileName = Column(String(255), nullable=False)
    FileUrl = Column(String(500), nullable=False, unique=True)
    UploadedBy = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())

    DocumentType = relationship("DocumentType", back_populates="Documents")
    Item = relationship("Item", back_populates="Documents")
