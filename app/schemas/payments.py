from pydantic import BaseModel, Field
from typing import Optional


class BookingPaymentStatus(BaseModel):
    """Aggregate over a confirmation code's tickets. Derived, never stored."""
    confirmationCode: str
    totalTickets: int = 0
    paidTickets: int = 0
    unpaidTickets: int = 0
    totalAmount: int = 0
    paidAmount: int = 0
    unpaidAmount: int = 0
    bookingPaid: bool = False
    partiallyPaid: bool = False
    paymentRequired: bool = False


class PaymentCreated(BaseModel):
    confirmationCode: str
    paymentUrl: str
    txnRef: str
    amount: int
    orderInfo: str


class ReturnOutcome(BaseModel):
    status: str  # ACCEPTED | REJECTED
    success: bool = False
    outcome: str  # see gateway_codes.GatewayOutcome
    message: str = ""
    signatureValid: bool = False
    confirmationCode: Optional[str] = None
    rawResponseCode: Optional[str] = None
    txnRef: Optional[str] = None
    transactionNo: Optional[str] = None
    transactionStatus: Optional[str] = None
    amount: Optional[int] = None  # VND, already divided by 100
    bankCode: Optional[str] = None
    cardType: Optional[str] = None
    payDate: Optional[str] = None
    # filled by reconciliation, not by the processor
    ticketsMarkedPaid: int = 0
    alreadyProcessed: bool = False


class CancelResult(BaseModel):
    confirmationCode: str
    cancelledTickets: int
    bookingStatus: str = "cancelled"
    timestamp: str


class TransactionQueryResult(BaseModel):
    confirmationCode: str
    txnRef: str
    success: bool
    responseCode: str = ""
    transactionStatus: str = ""
    message: str = ""
    transactionNo: str = ""
    amount: Optional[int] = None
    settled: bool = False
    ticketsMarkedPaid: int = 0


class RefundRequest(BaseModel):
    confirmationCode: str
    amount: int = Field(gt=0)
    reason: str = Field(min_length=1, max_length=500)


class RefundRecord(BaseModel):
    id: str
    confirmationCode: str
    amount: int
    fullRefund: bool
    ticketsCancelled: int
    reason: str
    operator: str
    responseCode: str = ""
    message: str = ""
    createdAt: str


class ConfirmationCodeOut(BaseModel):
    confirmationCode: str


class IpnAck(BaseModel):
    RspCode: str
    Message: str


class PaymentErrorDetail(BaseModel):
    code: str
    message: str
    status: Optional[BookingPaymentStatus] = None


class CancelRequest(BaseModel):
    reason: str = Field(default="", max_length=500)
