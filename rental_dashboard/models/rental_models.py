from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_dashboard.db.base import Base


class AppUser(Base):
    __tablename__ = "users"

    UserID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    PasswordUpdatedAt = Column(Integer)
    IsActive = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())

    Profile = relationship("Profile", back_populates="User", uselist=False)


class Profile(Base):
    __tablename__ = "profiles"

    UserID = Column(Integer, ForeignKey("users.UserID"), primary_key=True)
    BusinessName = Column(String(255))
    BusinessCnpj = Column(String(32))
    BusinessPhone = Column(String(32))
    BusinessAddress = Column(String(500))
    BusinessCity = Column(String(120))
    BusinessState = Column(String(60))
    SignatureImage = Column(Text)
    UpdatedAt = Column(DateTime, server_default=func.now())

    User = relationship("AppUser", back_populates="Profile")


class Product(Base):
    __tablename__ = "products"

    ProductID = Column(Integer, primary_key=True)
    OwnerID = Column(Integer, ForeignKey("users.UserID"))
    Name = Column(String(255), nullable=False)
    Kind = Column(String(20), nullable=False, default="trackable")
    TotalQuantity = Column(Integer, nullable=False, default=0)
    DailyPrice = Column(Numeric(12, 2), nullable=False, default=0)
    ReplacementValue = Column(Numeric(12, 2))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Assets = relationship("Asset", back_populates="Product", cascade="all, delete-orphan")
    OrderItems = relationship("OrderItem", back_populates="Product")


class Asset(Base):
    __tablename__ = "assets"
    __table_args__ = (UniqueConstraint("ProductID", "SerialNumber", name="uq_assets_product_serial"),)

    AssetID = Column(Integer, primary_key=True)
    ProductID = Column(Integer, ForeignKey("products.ProductID"), nullable=False)
    SerialNumber = Column(String(200), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    Product = relationship("Product", back_populates="Assets")
    OrderItems = relationship("OrderItem", back_populates="Asset")


class Order(Base):
    __tablename__ = "orders"

    OrderID = Column(Integer, primary_key=True)
    OrderNumber = Column(String(50), nullable=False)
    OwnerID = Column(Integer, ForeignKey("users.UserID"))
    ContractToken = Column(String(64), unique=True)
    CustomerName = Column(String(255), nullable=False)
    CustomerPhone = Column(String(40))
    CustomerCpf = Column(String(32))
    CustomerEmail = Column(String(255))
    DeliveryAddress = Column(String(500))
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    Status = Column(String(30), nullable=False, default="pending_signature")
    FulfillmentType = Column(String(20), nullable=False, default="reservation")
    DeliveryMethod = Column(String(20), nullable=False, default="pickup")
    PaymentMethod = Column(String(100))
    Notes = Column(String(1000))
    TotalAmount = Column(Numeric(12, 2), default=0)
    SignatureImage = Column(Text)
    SignedAt = Column(DateTime)
    SignerIp = Column(String(64))
    SignerUserAgent = Column(String(500))
    PickedUpAt = Column(DateTime)
    ReturnedAt = Column(DateTime)
    CanceledAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Items = relationship("OrderItem", back_populates="Order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    OrderItemID = Column(Integer, primary_key=True)
    OrderID = Column(Integer, ForeignKey("orders.OrderID"), nullable=False)
    ProductID = Column(Integer, ForeignKey("products.ProductID"), nullable=False)
    AssetID = Column(Integer, ForeignKey("assets.AssetID"))
    Quantity = Column(Integer, nullable=False, default=1)
    UnitPrice = Column(Numeric(12, 2), nullable=False, default=0)

    Order = relationship("Order", back_populates="Items")
    Product = relationship("Product", back_populates="OrderItems")
    Asset = relationship("Asset", back_populates="OrderItems")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
