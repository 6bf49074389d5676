"""Import of Polish bank statements (mBank, ING CSV, MT940, PDF) into a transaction store."""
