"""
VaultX Services
Call builders and planners for the Morpho XAUt0/USDT0 market

Import from the submodules directly (``services.borrow_service`` etc.);
``data_sources.morpho`` depends on ``services.position_math``, so this
package must not import its submodules eagerly.
"""
