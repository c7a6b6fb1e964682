"""Customer tier, RFM scoring and CRM analytics write-back."""
