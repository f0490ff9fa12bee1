from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, List

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base, db_session
from .utils import utcnow


class TxnStatusEnum(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class TxnTypeEnum(str, Enum):
    DEPOSIT = "deposit"
    PAYMENT = "payment"


class TxnMethodTypeEnum(str, Enum):
    QR = "qr"
    BALANCE = "balance"


class OrderStatusEnum(str, Enum):
    PENDING = "PENDING"
    PREPARE = "PREPARE"
    DELIVERY = "DELIVERY"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


ORDER_TRANSITIONS = {
    OrderStatusEnum.PENDING.value: {OrderStatusEnum.PREPARE.value, OrderStatusEnum.REJECTED.value},
    OrderStatusEnum.PREPARE.value: {OrderStatusEnum.DELIVERY.value, OrderStatusEnum.REJECTED.value},
    OrderStatusEnum.DELIVERY.value: {OrderStatusEnum.COMPLETED.value},
    OrderStatusEnum.COMPLETED.value: set(),
    OrderStatusEnum.REJECTED.value: set(),
}


class SystemConfig(Base):
    __tablename__ = "tbl_system_config"

    id: Mapped[int] = mapped_column(primary_key=True)
    config_name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    config_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SystemConfig {self.config_name}>"


class Company(Base):
    __tablename__ = "tbl_company"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    txn_method_id: Mapped[int | None] = mapped_column(
        ForeignKey("tbl_transaction_method.id"), nullable=True
    )

    branches: Mapped[List["Branch"]] = relationship("Branch", back_populates="company")

    def __repr__(self) -> str:
        return f"<Company {self.name}>"


class Branch(Base):
    __tablename__ = "tbl_branch"

    id: Mapped[int] = mapped_column(primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("tbl_company.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_line: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    open_hours: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_force_closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    company: Mapped[Company] = relationship("Company", back_populates="branches")
    products: Mapped[List["BranchProduct"]] = relationship(
        "BranchProduct",
        back_populates="branch",
        cascade="all, delete-orphan",
        order_by="BranchProduct.product_id",
    )

    def __repr__(self) -> str:
        return f"<Branch {self.name}>"


class Product(Base):
    __tablename__ = "tbl_product"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    base_price: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    search_terms: Mapped[str | None] = mapped_column(Text, nullable=True)

    add_ons: Mapped[List["ProductAddOn"]] = relationship(
        "ProductAddOn",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductAddOn.id",
    )
    categories: Mapped[List["ProductCategory"]] = relationship(
        "ProductCategory", back_populates="product", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Product {self.name}>"


class BranchProduct(Base):
    __tablename__ = "tbl_branch_product"
    __table_args__ = (UniqueConstraint("branch_id", "product_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("tbl_branch.id"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("tbl_product.id"), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    stock_qty: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_override: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    search_terms: Mapped[str | None] = mapped_column(Text, nullable=True)

    branch: Mapped[Branch] = relationship("Branch", back_populates="products")
    product: Mapped[Product] = relationship("Product")

    @property
    def effective_price(self) -> float:
        if self.price_override is not None:
            return float(self.price_override)
        if self.product and self.product.base_price is not None:
            return float(self.product.base_price)
        return 0.0

    def __repr__(self) -> str:
        return f"<BranchProduct branch={self.branch_id} product={self.product_id}>"


class ProductAddOn(Base):
    __tablename__ = "tbl_product_add_on"

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("tbl_product.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    price: Mapped[float | None] = mapped_column(Numeric(10, 2), default=0, nullable=True)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    group_name: Mapped[str | None] = mapped_column(String(120), nullable=True)

    product: Mapped[Product] = relationship("Product", back_populates="add_ons")


class Category(Base):
    __tablename__ = "tbl_category"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ProductCategory(Base):
    __tablename__ = "tbl_product_category"
    __table_args__ = (UniqueConstraint("product_id", "category_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("tbl_product.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("tbl_category.id"), nullable=False)

    product: Mapped[Product] = relationship("Product", back_populates="categories")
    category: Mapped[Category] = relationship("Category")


class User(Base):
    __tablename__ = "tbl_user"

    id: Mapped[int] = mapped_column(primary_key=True)
    firebase_uid: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_email_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_phone_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    balance: Mapped[float] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    card: Mapped[list | None] = mapped_column(JSON, nullable=True)
    txn_history: Mapped[list | None] = mapped_column(JSON, nullable=True)
    order_history: Mapped[list | None] = mapped_column(JSON, nullable=True)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def balance_value(self) -> float:
        return float(self.balance or 0)

    def __repr__(self) -> str:
        return f"<User {self.id} uid={self.firebase_uid}>"


class TransactionMethod(Base):
    __tablename__ = "tbl_transaction_method"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default=TxnMethodTypeEnum.QR.value, nullable=False)
    details: Mapped[Any] = mapped_column(JSON, nullable=True)
    is_deleted: Mapped[str] = mapped_column(String(1), default="N", nullable=False)

    def __repr__(self) -> str:
        return f"<TransactionMethod {self.code} type={self.type}>"


class Transaction(Base):
    __tablename__ = "tbl_transaction"
    __table_args__ = (
        Index(
            "ux_tbl_transaction_transref_transdate",
            "trans_ref",
            "trans_date",
            unique=True,
            sqlite_where=text("trans_ref IS NOT NULL"),
            postgresql_where=text("trans_ref IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("tbl_company.id"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("tbl_user.id"), nullable=True, index=True)
    txn_type: Mapped[str] = mapped_column(String(20), default=TxnTypeEnum.PAYMENT.value, nullable=False)
    txn_method_id: Mapped[int | None] = mapped_column(
        ForeignKey("tbl_transaction_method.id"), nullable=True
    )
    reversal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    adjust_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TxnStatusEnum.PENDING.value, nullable=False)
    trans_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    trans_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    trans_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    method: Mapped[TransactionMethod | None] = relationship("TransactionMethod")
    company: Mapped[Company] = relationship("Company")
    orders: Mapped[List["Order"]] = relationship("Order", back_populates="txn")

    @property
    def amount_value(self) -> float:
        return float(self.amount or 0)

    def __repr__(self) -> str:
        return f"<Transaction #{self.id} {self.txn_type} {self.status}>"


class Order(Base):
    __tablename__ = "tbl_order"

    id: Mapped[int] = mapped_column(primary_key=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("tbl_branch.id"), nullable=False)
    txn_id: Mapped[int | None] = mapped_column(ForeignKey("tbl_transaction.id"), nullable=True, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("tbl_user.id"), nullable=True, index=True)
    order_details: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=OrderStatusEnum.PENDING.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    branch: Mapped[Branch] = relationship("Branch")
    txn: Mapped[Transaction | None] = relationship("Transaction", back_populates="orders")

    @property
    def total(self) -> float:
        total = 0.0
        for item in (self.order_details or {}).get("productList", []):
            addons = sum(float(addon.get("price") or 0) for addon in item.get("productAddOns", []))
            total += (float(item.get("price") or 0) + addons) * int(item.get("qty") or 0)
        return round(total, 2)

    def __repr__(self) -> str:
        return f"<Order #{self.id} branch={self.branch_id} status={self.status}>"


DEFAULT_SYSTEM_CONFIG = [
    {"config_name": "MAX_QTY_PER_ITEM", "config_value": "10", "description": "Maximum quantity per cart line"},
    {"config_name": "MAXIMUM_CARD", "config_value": "100", "description": "Maximum items allowed in card"},
    {"config_name": "MAXIMUM_BRANCH_ORDER", "config_value": "1", "description": "1 = checkout from one branch only"},
    {"config_name": "TXN_EXPIRE_SECONDS", "config_value": "900", "description": "QR payment lifetime"},
]

DEFAULT_METHODS = [
    {"code": "PROMPTPAY_QR", "name": "PromptPay QR", "type": TxnMethodTypeEnum.QR.value},
    {"code": "WALLET", "name": "Wallet balance", "type": TxnMethodTypeEnum.BALANCE.value},
]

DEFAULT_CATEGORIES = ["ก๋วยเตี๋ยว", "ข้าว", "เครื่องดื่ม"]

DEFAULT_COMPANIES = [
    {
        "name": "ครัวคุณแม่",
        "payment_id": "0812345678",
        "branches": [
            {
                "name": "ครัวคุณแม่ สาขาสยาม",
                "address_line": "Rama I Rd, Pathum Wan, Bangkok",
                "lat": 13.7455,
                "lng": 100.5340,
                "open_hours": {
                    day: [["08:00", "21:00"]]
                    for day in ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
                },
                "products": [
                    {
                        "name": "ก๋วยเตี๋ยวต้มยำ",
                        "base_price": 60.0,
                        "search_terms": "noodle tom yum",
                        "categories": ["ก๋วยเตี๋ยว"],
                        "add_ons": [
                            {"name": "พิเศษ", "price": 10.0, "group_name": "ขนาด"},
                            {"name": "เพิ่มไข่", "price": 10.0, "group_name": "เพิ่มเติม"},
                        ],
                    },
                    {
                        "name": "ข้าวกะเพราหมูสับ",
                        "base_price": 55.0,
                        "search_terms": "kaprao basil pork rice",
                        "categories": ["ข้าว"],
                        "add_ons": [{"name": "ไข่ดาว", "price": 10.0, "group_name": "เพิ่มเติม"}],
                    },
                    {
                        "name": "ชาไทยเย็น",
                        "base_price": 35.0,
                        "search_terms": "thai tea",
                        "categories": ["เครื่องดื่ม"],
                    },
                ],
            },
            {
                "name": "ครัวคุณแม่ สาขาอารีย์",
                "address_line": "Phahonyothin Rd, Phaya Thai, Bangkok",
                "lat": 13.7796,
                "lng": 100.5446,
                "open_hours": None,
                "products": [
                    {"name": "ข้าวกะเพราหมูสับ", "price_override": 59.0},
                    {"name": "ชาไทยเย็น"},
                ],
            },
        ],
    }
]


def _ensure_system_config() -> None:
    existing = {row.config_name for row in db_session.query(SystemConfig).all()}
    for spec in DEFAULT_SYSTEM_CONFIG:
        if spec["config_name"] in existing:
            continue
        db_session.add(SystemConfig(**spec))


def seed_sample_data(force: bool = False) -> None:
    """Populate the database with a sample company, branches, menu and payment methods."""
    if force:
        db_session.query(Order).delete(synchronize_session=False)
        db_session.query(Transaction).delete(synchronize_session=False)
        db_session.query(ProductCategory).delete(synchronize_session=False)
        db_session.query(ProductAddOn).delete(synchronize_session=False)
        db_session.query(BranchProduct).delete(synchronize_session=False)
        db_session.query(Product).delete(synchronize_session=False)
        db_session.query(Category).delete(synchronize_session=False)
        db_session.query(Branch).delete(synchronize_session=False)
        db_session.query(Company).delete(synchronize_session=False)
        db_session.commit()

    _ensure_system_config()

    if db_session.query(TransactionMethod).count() == 0:
        db_session.add_all(TransactionMethod(**spec) for spec in DEFAULT_METHODS)

    if db_session.query(Category).count() == 0:
        db_session.add_all(Category(name=name) for name in DEFAULT_CATEGORIES)

    db_session.flush()

    if db_session.query(Company).count() == 0:
        categories = {category.name: category for category in db_session.query(Category).all()}
        qr_method = (
            db_session.query(TransactionMethod)
            .filter(TransactionMethod.type == TxnMethodTypeEnum.QR.value)
            .first()
        )
        products_by_name: dict[str, Product] = {}

        for company_spec in DEFAULT_COMPANIES:
            company = Company(
                name=company_spec["name"],
                payment_id=company_spec.get("payment_id"),
                txn_method_id=qr_method.id if qr_method else None,
            )
            db_session.add(company)
            db_session.flush()

            for branch_spec in company_spec.get("branches", []):
                branch = Branch(
                    company=company,
                    name=branch_spec["name"],
                    address_line=branch_spec.get("address_line"),
                    lat=branch_spec.get("lat"),
                    lng=branch_spec.get("lng"),
                    open_hours=branch_spec.get("open_hours"),
                )
                db_session.add(branch)
                db_session.flush()

                for product_spec in branch_spec.get("products", []):
                    product = products_by_name.get(product_spec["name"])
                    if not product:
                        product = Product(
                            name=product_spec["name"],
                            base_price=product_spec.get("base_price"),
                            search_terms=product_spec.get("search_terms"),
                        )
                        db_session.add(product)
                        db_session.flush()
                        for addon_spec in product_spec.get("add_ons", []):
                            db_session.add(ProductAddOn(product=product, **addon_spec))
                        for category_name in product_spec.get("categories", []):
                            category = categories.get(category_name)
                            if category:
                                db_session.add(ProductCategory(product=product, category=category))
                        products_by_name[product.name] = product

                    db_session.add(
                        BranchProduct(
                            branch=branch,
                            product=product,
                            price_override=product_spec.get("price_override"),
                        )
                    )

    db_session.commit()
